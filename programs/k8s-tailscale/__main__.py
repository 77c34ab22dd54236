"""Tailscale node proxying to every mesh peer."""

from infra.programs import tailscale

tailscale()
