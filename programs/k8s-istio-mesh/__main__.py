"""Istio multi-cluster remote secrets for every mesh peer."""

from infra.programs import istio_mesh

istio_mesh()
