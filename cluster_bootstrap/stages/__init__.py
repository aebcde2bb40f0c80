"""Provisioning stage actions run on cluster nodes."""
