"""
Named template engine.

A template is a callable turning a variable bag into text. The application
decides at startup which templates exist; callers check ``has_template`` for
optional ones (meta-data, network-config) before rendering them.
"""

from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from homonculus.errors import HomonculusError

TEMPLATE_LIBVIRT = "libvirt-domain"
TEMPLATE_CLOUDINIT_USER_DATA = "cloudinit-user-data"
TEMPLATE_CLOUDINIT_META_DATA = "cloudinit-meta-data"
TEMPLATE_CLOUDINIT_NETWORK_CONFIG = "cloudinit-network-config"

Renderer = Callable[[Mapping[str, Any]], str]


class TemplateNotFoundError(HomonculusError):
    pass


class TemplateEngine:
    """Registry of named renderers."""

    def __init__(self):
        self._templates: Dict[str, Renderer] = {}

    def load_template(self, name: str, renderer: Renderer) -> "TemplateEngine":
        self._templates[name] = renderer
        return self

    def has_template(self, name: str) -> bool:
        return name in self._templates

    def render(self, name: str, variables: Mapping[str, Any]) -> str:
        try:
            renderer = self._templates[name]
        except KeyError:
            raise TemplateNotFoundError(f"template {name} not found") from None
        return renderer(variables)

    def render_to_bytes(self, name: str, variables: Mapping[str, Any]) -> bytes:
        return self.render(name, variables).encode("utf-8")

    def render_to_file(self, name: str, path: Path, variables: Mapping[str, Any]) -> Path:
        path = Path(path)
        path.write_text(self.render(name, variables))
        return path


def create_default_engine(meta_data: bool = True, network_config: bool = False) -> TemplateEngine:
    """Engine with the domain and user-data templates, plus the optional ones asked for."""
    from homonculus.cloud_init import render_meta_data, render_network_config, render_user_data
    from homonculus.vm_xml import render_domain_xml

    engine = TemplateEngine()
    engine.load_template(TEMPLATE_LIBVIRT, render_domain_xml)
    engine.load_template(TEMPLATE_CLOUDINIT_USER_DATA, render_user_data)
    if meta_data:
        engine.load_template(TEMPLATE_CLOUDINIT_META_DATA, render_meta_data)
    if network_config:
        engine.load_template(TEMPLATE_CLOUDINIT_NETWORK_CONFIG, render_network_config)
    return engine
