import base64
import json
import os
import re
import shutil

import pytest
from fastapi.testclient import TestClient

from config import BASE_DIR, Settings
from main import create_app
from manager import TemplateLoadError

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["service"] == "vless-generator"
    assert body["version"] == "1.0.0"
    assert body["templates"] == ["vless"]
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", body["timestamp"])


def test_home_page(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert "VLESS Config Generator" in resp.text
    assert 'value="vless.example.com"' in resp.text
    assert 'value="/websocket"' in resp.text


def test_home_page_russian(client):
    resp = client.get("/?lang=ru")
    assert resp.status_code == 200
    assert "Генератор конфигураций VLESS" in resp.text


def test_home_page_unknown_language_uses_english(client):
    resp = client.get("/?lang=xx")
    assert "VLESS Config Generator" in resp.text


def test_config_page(client):
    resp = client.get("/vless/abc?server=ex.com&port=443&ws-path=/ws")
    assert resp.status_code == 200
    assert "vless://abc@ex.com:443?type=ws&amp;path=/ws&amp;host=ex.com&amp;security=tls&amp;fp=chrome" in resp.text

    match = re.search(r'src="data:image/png;base64,([^"]+)"', resp.text)
    assert match
    assert base64.b64decode(match.group(1)).startswith(PNG_MAGIC)

    # download link carries the same query string
    assert "/config/vless/abc.json?server=ex.com&amp;port=443&amp;ws-path=/ws" in resp.text


def test_config_page_defaults(client):
    resp = client.get("/vless/abc")
    assert resp.status_code == 200
    assert "vless://abc@vless.example.com:443?type=ws&amp;path=/websocket" in resp.text


@pytest.mark.parametrize("path", ["/nosuch/uuid", "/vless/", "/vless", "/vless/abc/extra"])
def test_config_page_not_found(client, path):
    assert client.get(path).status_code == 404


def test_download_config(client):
    resp = client.get("/config/vless/abc.json?server=ex.com&port=8443&ws-path=/ws&mixed-port=1080&tun-mtu=bad")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/json"
    assert resp.headers["content-disposition"] == "attachment; filename=vless-config.json"

    config = resp.json()
    outbound = config["outbounds"][0]
    assert outbound["uuid"] == "abc"
    assert outbound["server"] == "ex.com"
    assert outbound["server_port"] == 8443
    assert outbound["transport"]["path"] == "/ws"
    assert outbound["transport"]["headers"]["Host"] == "ex.com"
    assert config["inbounds"][1]["listen_port"] == 1080
    assert config["inbounds"][0]["mtu"] == 9000


def test_repeated_query_key_uses_first_value(client):
    config = client.get("/config/vless/abc.json?server=first.com&server=second.com").json()
    assert config["outbounds"][0]["server"] == "first.com"


@pytest.mark.parametrize(
    "path",
    ["/config/nosuch/abc.json", "/config/vless/abc.txt", "/config/vless/abc", "/config/vless/.json"],
)
def test_download_not_found(client, path):
    assert client.get(path).status_code == 404


def test_qrcode(client):
    resp = client.post("/qrcode", data={"url": "vless://abc@ex.com:443?type=ws"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert resp.content.startswith(PNG_MAGIC)


def test_qrcode_multipart(client):
    resp = client.post("/qrcode", files={"url": (None, "vless://abc@ex.com:443")})
    assert resp.status_code == 200
    assert resp.content.startswith(PNG_MAGIC)


def test_qrcode_rejects_other_schemes(client):
    resp = client.post("/qrcode", data={"url": "http://evil"})
    assert resp.status_code == 400
    assert resp.text == "Invalid VLESS URL"


def test_qrcode_requires_url(client):
    resp = client.post("/qrcode", data={})
    assert resp.status_code == 400
    assert resp.text == "URL parameter is required"


def test_qrcode_method_not_allowed(client):
    assert client.get("/qrcode").status_code == 405


def test_static_stylesheet(client):
    resp = client.get("/static/style.css")
    assert resp.status_code == 200
    assert "text/css" in resp.headers["content-type"]


def test_generated_config_is_valid_json_document(client):
    resp = client.get("/config/vless/abc.json")
    assert json.loads(resp.content)["outbounds"][0]["type"] == "vless"


def test_create_app_fails_without_templates(tmp_path):
    with pytest.raises(TemplateLoadError):
        create_app(Settings(templates_dir=str(tmp_path)))


def test_health_lists_all_configured_types(tmp_path):
    for name in ("alpha", "beta"):
        (tmp_path / f"{name}.json").write_text(json.dumps({"outbounds": []}), encoding="utf-8")

    client = TestClient(create_app(Settings(templates_dir=str(tmp_path), template_types=["alpha", "beta"])))
    assert client.get("/health").json()["templates"] == ["alpha", "beta"]
    # outbounds empty: the share link cannot be built
    assert client.get("/alpha/abc").status_code == 500


def test_custom_templates_dir_still_renders_pages(tmp_path):
    source = os.path.join(BASE_DIR, "templates", "vless.json")
    shutil.copy(source, tmp_path / "vless.json")

    client = TestClient(create_app(Settings(templates_dir=str(tmp_path))))
    assert client.get("/").status_code == 200
    assert client.get("/vless/abc").status_code == 200


def test_download_link_escapes_uuid(client):
    resp = client.get("/vless/a%23b")
    assert resp.status_code == 200
    assert 'href="/config/vless/a%23b.json"' in resp.text
