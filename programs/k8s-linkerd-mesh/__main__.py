"""Linkerd multicluster links to every mesh peer."""

from infra.programs import linkerd_mesh

linkerd_mesh()
