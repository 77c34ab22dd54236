"""Mesh federation components."""

from infra.components.istio_mesh import IstioMesh
from infra.components.linkerd_mesh import LinkerdLink, LinkerdMesh
from infra.components.tailscale import Tailscale

__all__ = ["IstioMesh", "LinkerdLink", "LinkerdMesh", "Tailscale"]
