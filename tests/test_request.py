"""
Tests for operator input validation: provisioning modes and registry credentials.
"""

import pytest

from edge_installer.errors import ValidationError
from edge_installer.request import (
    DEFAULT_REGISTRY,
    Dps,
    ExistingConfig,
    LifecycleRequest,
    Manual,
    build_credential,
    build_provisioning,
    registry_host_from_image,
)
from edge_installer.settings import DEFAULT_DPS_ENDPOINT


class TestBuildCredential:
    @pytest.mark.parametrize(
        "image, username, password, ok",
        [
            (None, None, None, True),
            ("r.io/agent:1", None, None, True),
            ("r.io/agent:1", "u", "p", True),
            ("r.io/agent:1", "u", None, False),
            ("r.io/agent:1", None, "p", False),
            (None, "u", "p", False),
            (None, "u", None, False),
        ],
    )
    def test_table(self, image, username, password, ok):
        if ok:
            build_credential(image, username, password)
        else:
            with pytest.raises(ValidationError):
                build_credential(image, username, password)

    def test_no_image_means_no_credential(self):
        assert build_credential(None, None, None) is None

    def test_registry_host_derived(self):
        cred = build_credential("myreg.azurecr.io/edge/agent:1.0", "u", "p")
        assert cred.registry_host == "myreg.azurecr.io"
        assert cred.has_login

    def test_registry_host_override(self):
        cred = build_credential("agent:1.0", None, None, registry_host="mirror.local:5000")
        assert cred.registry_host == "mirror.local:5000"
        assert not cred.has_login


class TestRegistryHost:
    @pytest.mark.parametrize(
        "image, host",
        [
            ("mcr.microsoft.com/azureiotedge-agent:1.0", "mcr.microsoft.com"),
            ("localhost/agent", "localhost"),
            ("reg:5000/agent", "reg:5000"),
            ("library/agent:1", DEFAULT_REGISTRY),
            ("agent", DEFAULT_REGISTRY),
        ],
    )
    def test_host(self, image, host):
        assert registry_host_from_image(image) == host


class TestBuildProvisioning:
    def test_manual(self):
        assert build_provisioning(manual=True, connection_string="cs") == Manual("cs")

    def test_manual_inferred(self):
        assert build_provisioning(connection_string="cs") == Manual("cs")

    def test_dps(self):
        assert build_provisioning(dps=True, scope_id="s", registration_id="r") == Dps("s", "r", DEFAULT_DPS_ENDPOINT)

    def test_dps_inferred_with_endpoint(self):
        p = build_provisioning(scope_id="s", registration_id="r", global_endpoint="https://dps.example")
        assert p == Dps("s", "r", "https://dps.example")

    def test_existing(self):
        assert build_provisioning(existing_config=True) == ExistingConfig()

    def test_none_selected(self):
        with pytest.raises(ValidationError):
            build_provisioning()

    def test_two_modes(self):
        with pytest.raises(ValidationError):
            build_provisioning(manual=True, dps=True, connection_string="cs", scope_id="s", registration_id="r")

    def test_manual_missing_connection_string(self):
        with pytest.raises(ValidationError):
            build_provisioning(manual=True)

    def test_manual_with_dps_fields(self):
        with pytest.raises(ValidationError):
            build_provisioning(manual=True, connection_string="cs", scope_id="s")

    def test_dps_missing_registration(self):
        with pytest.raises(ValidationError):
            build_provisioning(dps=True, scope_id="s")

    def test_existing_with_fields(self):
        with pytest.raises(ValidationError):
            build_provisioning(existing_config=True, connection_string="cs")


class TestLifecycleRequest:
    def test_secrets(self):
        req = LifecycleRequest(
            provisioning=Manual("cs-secret"),
            credential=build_credential("r.io/a:1", "u", "pw-secret"),
        )
        assert set(req.secrets()) == {"cs-secret", "pw-secret"}

    def test_no_secrets(self):
        assert LifecycleRequest().secrets() == []
