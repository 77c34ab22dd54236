"""Multi-cloud Kubernetes cluster provisioning and service mesh federation."""
