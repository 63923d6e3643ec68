"""
External Metrics Service package.

Serves application-defined metrics to Kubernetes horizontal pod autoscalers
over the ``external.metrics.k8s.io/v1beta1`` API. Each metric is recomputed
by a user function whenever its trigger fires; queries return the latest
value, optionally narrowed by a ``labelSelector``.
"""
