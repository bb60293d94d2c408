import json
import os

import pytest
from fastapi.testclient import TestClient

from config import BASE_DIR, Settings
from main import create_app
from manager import TemplateManager

TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")


@pytest.fixture
def vless_template():
    with open(os.path.join(TEMPLATES_DIR, "vless.json"), encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def manager():
    return TemplateManager.load_templates(TEMPLATES_DIR, ["vless"])


@pytest.fixture
def client():
    return TestClient(create_app(Settings()))
