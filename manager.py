import json
import logging
import os
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from config import DynamicConfig
from utils import deep_copy

logger = logging.getLogger(__name__)


class TemplateNotFoundError(LookupError):
    """Requested template type was never loaded."""

    def __init__(self, template_type: str):
        super().__init__(f"template type {template_type} not found")
        self.template_type = template_type


class TemplateLoadError(RuntimeError):
    """A template file could not be read or parsed at startup."""


def _child(parent: Any, key: Any, kind: type) -> Optional[Any]:
    """Return parent[key] if it exists and is of `kind`, else None."""
    try:
        value = parent[key]
    except (KeyError, IndexError, TypeError):
        return None
    return value if isinstance(value, kind) else None


class TemplateManager:
    """Read-only store of parsed sing-box templates, keyed by type.

    Stored templates are never handed out directly: every lookup returns
    a deep copy, so concurrent requests can mutate their own config freely.
    """

    def __init__(self, templates: Optional[Mapping[str, Dict[str, Any]]] = None):
        self._templates = MappingProxyType(dict(templates or {}))

    @classmethod
    def load_templates(cls, directory: str, types: Iterable[str]) -> "TemplateManager":
        """Load `<directory>/<type>.json` for each type. Any failure is fatal."""
        types = list(types)
        logger.info(f"Loading configuration templates from {directory}: {types}")

        loaded: Dict[str, Dict[str, Any]] = {}
        for template_type in types:
            template_file = os.path.join(directory, f"{template_type}.json")
            logger.debug(f"Loading template file {template_file} for type '{template_type}'")
            try:
                with open(template_file, "r", encoding="utf-8") as f:
                    template = json.load(f)
            except OSError as e:
                raise TemplateLoadError(f"failed to read template {template_type}: {e}") from e
            except json.JSONDecodeError as e:
                raise TemplateLoadError(f"failed to parse template {template_type}: {e}") from e

            if not isinstance(template, dict):
                raise TemplateLoadError(f"template {template_type} must be a JSON object")

            loaded[template_type] = template
            logger.info(f"Template '{template_type}' loaded successfully")

        logger.info(f"All templates loaded successfully ({len(loaded)})")
        return cls(loaded)

    def get_template(self, template_type: str) -> Optional[Dict[str, Any]]:
        """Return a private copy of the template, or None if unknown."""
        template = self._templates.get(template_type)
        if template is None:
            return None
        return deep_copy(template)

    def get_template_types(self) -> List[str]:
        return list(self._templates)

    def generate_config(self, template_type: str, uuid: str, dynamic_cfg: DynamicConfig) -> Dict[str, Any]:
        """Copy the template and apply dynamic parameters and the UUID to it."""
        config = self.get_template(template_type)
        if config is None:
            raise TemplateNotFoundError(template_type)

        apply_dynamic_config(config, dynamic_cfg)

        outbound = _child(_child(config, "outbounds", list), 0, dict)
        if outbound is not None and outbound.get("type") == "vless":
            outbound["uuid"] = uuid
            logger.debug(f"UUID set in configuration: {uuid}")

        return config


def apply_dynamic_config(config: Dict[str, Any], dynamic_cfg: DynamicConfig) -> None:
    """Write dynamic values onto the known template paths; absent containers are skipped."""
    outbound = _child(_child(config, "outbounds", list), 0, dict)
    if outbound is not None:
        outbound["server"] = dynamic_cfg.server
        outbound["server_port"] = dynamic_cfg.server_port

        transport = _child(outbound, "transport", dict)
        if transport is not None:
            transport["path"] = dynamic_cfg.ws_path
            headers = _child(transport, "headers", dict)
            if headers is not None:
                headers["Host"] = dynamic_cfg.server

        tls = _child(outbound, "tls", dict)
        if tls is not None and "server_name" in tls:
            tls["server_name"] = dynamic_cfg.server
    else:
        logger.debug("Template has no outbound object, skipping server settings")

    servers = _child(_child(config, "dns", dict), "servers", list)
    if servers is not None and len(servers) >= 2:
        dns_server = _child(servers, 0, dict)
        if dns_server is not None:
            dns_server["address"] = dynamic_cfg.dns_server
        doh_server = _child(servers, 1, dict)
        if doh_server is not None:
            doh_server["address"] = dynamic_cfg.doh_server
    else:
        logger.debug("Template has fewer than two DNS servers, skipping DNS settings")

    inbounds = _child(config, "inbounds", list)
    if inbounds is None:
        logger.debug("Template has no inbounds, skipping TUN and mixed settings")
        return

    tun = _child(inbounds, 0, dict)
    if tun is not None:
        tun["inet4_address"] = [dynamic_cfg.tun_address]
        tun["mtu"] = dynamic_cfg.tun_mtu

    mixed = _child(inbounds, 1, dict)
    if mixed is not None:
        mixed["listen_port"] = dynamic_cfg.mixed_port
