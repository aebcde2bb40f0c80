"""Bootstrap orchestrator for small kubeadm clusters on desktop hypervisor VMs."""

__version__ = "0.1.0"
