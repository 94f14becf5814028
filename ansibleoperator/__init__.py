"""Run Ansible playbooks and roles for Kubernetes custom resources via ansible-runner."""

__version__ = "0.1.0"