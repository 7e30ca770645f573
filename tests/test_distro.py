"""Tests for distro profile selection."""

import pytest

from pve_template.config import EnvironmentConfig
from pve_template.distro import (
    DEBIAN_FAMILY,
    REDHAT_FAMILY,
    DistroProfile,
    DistroProfileSelector,
    ProfileRule,
)


@pytest.fixture
def selector():
    return DistroProfileSelector()


@pytest.mark.parametrize(
    "image_name",
    ["ubuntu-2404-cloudimg-amd64.img", "noble-server-cloudimg-amd64.img", "debian-12-generic-amd64.qcow2"],
)
def test_debian_family_images(selector, image_name):
    assert selector.select(image_name) is DEBIAN_FAMILY


def test_ubuntu_detected_from_url(selector):
    profile = selector.select("noble-server-cloudimg-amd64.img", "https://cloud-images.ubuntu.com/noble/current")
    assert profile.sudo_group == "sudo"
    assert "qemu-guest-agent" in profile.packages


def test_almalinux_image(selector):
    profile = selector.select("AlmaLinux-9-GenericCloud-latest.x86_64.qcow2")

    assert profile is REDHAT_FAMILY
    assert profile.sudo_group == "wheel"
    assert profile.packages == ("qemu-guest-agent", "mc", "avahi-tools")
    assert profile.memory_override == 1024
    assert profile.default_user_override == "almalinux"


def test_later_rule_wins_without_merging(selector):
    """Test an image matching both families gets exactly the later profile."""
    profile = selector.select("ubuntu-alma-hybrid.img")

    assert profile == REDHAT_FAMILY
    assert "cron" not in profile.packages
    assert "htop" not in profile.packages


def test_no_match_keeps_baseline(selector):
    assert selector.select("mystery-os.img", "https://example.com/images") is DEBIAN_FAMILY


def test_matching_is_case_insensitive(selector):
    assert selector.select("ALMALINUX-9.QCOW2") is REDHAT_FAMILY


def test_custom_rules_apply_in_order():
    first = DistroProfile(name="first", packages=("a",), sudo_group="one")
    second = DistroProfile(name="second", packages=("b",), sudo_group="two")
    selector = DistroProfileSelector(
        rules=[
            ProfileRule("first", lambda name, url: "x" in name, first),
            ProfileRule("second", lambda name, url: "y" in name, second),
        ]
    )

    assert selector.select("x.img") is first
    assert selector.select("xy.img") is second


def test_profile_overrides_take_precedence():
    env = EnvironmentConfig(vm_memory_mb=4096, cloudinit_user="ubuntu")

    assert REDHAT_FAMILY.memory_mb(env) == 1024
    assert REDHAT_FAMILY.cloudinit_user(env) == "almalinux"
    assert DEBIAN_FAMILY.memory_mb(env) == 4096
    assert DEBIAN_FAMILY.cloudinit_user(env) == "ubuntu"
