"""Single-policy Kubernetes admission webhooks."""
