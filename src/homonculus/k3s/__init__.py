"""K3s cluster bootstrap over SSH."""

from homonculus.k3s.bootstrap import BootstrapService, LinePrefixer
from homonculus.k3s.token import generate_token

__all__ = ["BootstrapService", "LinePrefixer", "generate_token"]
