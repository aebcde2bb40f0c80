"""Property-based tests for settings validation."""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from cluster_bootstrap.models.cluster import NetworkSettings, SoftwareVersions

octet = st.integers(min_value=0, max_value=255)


def network(**overrides):
    values = {
        "dns_servers": ["1.1.1.1"],
        "control_ip": "192.168.1.100",
        "worker_ip_prefix": "192.168.1",
        "private_ip_prefix": "172.16.0",
    }
    values.update(overrides)
    return NetworkSettings(**values)


@given(servers=st.lists(st.tuples(octet, octet, octet, octet), min_size=1, max_size=4))
def test_valid_dns_servers_accepted(servers):
    addresses = [".".join(str(o) for o in server) for server in servers]

    assert network(dns_servers=", ".join(addresses)).dns_servers == addresses


@given(bad=st.integers(min_value=256, max_value=999))
def test_out_of_range_octet_rejected(bad):
    with pytest.raises(ValidationError):
        network(dns_servers=[f"10.0.0.{bad}"])
    with pytest.raises(ValidationError):
        network(worker_ip_prefix=f"192.{bad}.1")


@given(major=st.integers(0, 9), minor=st.integers(0, 99))
def test_major_minor_versions_accepted(major, minor):
    versions = SoftwareVersions(
        kubernetes=f"v{major}.{minor}", crio=f"v{major}.{minor}", os="xUbuntu_24.04", calico="3.28.2"
    )

    assert versions.kubernetes == f"v{major}.{minor}"


@given(patch=st.integers(0, 99))
def test_patch_versions_rejected(patch):
    with pytest.raises(ValidationError):
        SoftwareVersions(kubernetes=f"v1.31.{patch}", crio="v1.30", os="xUbuntu_24.04", calico="3.28.2")


@given(prefix_len=st.integers(min_value=8, max_value=16))
def test_overlapping_ranges_rejected(prefix_len):
    with pytest.raises(ValidationError):
        network(pod_cidr=f"10.0.0.0/{prefix_len}", service_cidr="10.0.0.0/24")
