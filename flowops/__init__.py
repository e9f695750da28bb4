"""
flowops - credential rotation, rollback and platform backup tooling for the
Flow (n8n) deployment on Kubernetes.
"""

__version__ = "1.0.0"
