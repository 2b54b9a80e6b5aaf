# ABOUTME: Unit tests for desired-state models
# ABOUTME: Tests RoleSpec validation, Vault payloads, image overrides and cluster metadata

import pytest
from pydantic import ValidationError

from cluster_bootstrap.errors import InputValidationError
from cluster_bootstrap.models import AuthConfig, ClusterMetadata, ImageOverride, RoleBinding, RoleSpec


@pytest.mark.unit
class TestRoleSpec:
    """Tests for RoleSpec."""

    def test_policy_arns_deduplicated_in_order(self):
        """Test that repeated ARNs keep their first position."""
        spec = RoleSpec(
            name="r",
            oidc_provider_arn="arn",
            service_account="ns:sa",
            policy_arns=["arn:b", "arn:a", "arn:b", "arn:c", "arn:a"],
        )

        assert spec.policy_arns == ("arn:b", "arn:a", "arn:c")

    def test_split_service_account(self):
        """Test splitting a valid subject."""
        spec = RoleSpec(name="r", oidc_provider_arn="arn", service_account="flux-system:source-controller")

        assert spec.split_service_account() == ("flux-system", "source-controller")

    def test_split_service_account_invalid(self):
        """Test that a subject without namespace is rejected."""
        spec = RoleSpec(name="r", oidc_provider_arn="arn", service_account="source-controller")

        with pytest.raises(InputValidationError):
            spec.split_service_account()

    def test_inline_policy_requires_name_and_document(self):
        """Test has_inline_policy needs both parts."""
        base = {"name": "r", "oidc_provider_arn": "arn", "service_account": "ns:sa"}

        assert RoleSpec(**base).has_inline_policy is False
        assert RoleSpec(**base, inline_policy_name="p").has_inline_policy is False
        assert RoleSpec(**base, inline_policy_name="p", inline_policy_document="{}").has_inline_policy is True

    def test_frozen(self):
        """Test that specs cannot be mutated after creation."""
        spec = RoleSpec(name="r", oidc_provider_arn="arn", service_account="ns:sa")

        with pytest.raises(ValidationError):
            spec.name = "other"


@pytest.mark.unit
class TestRoleBinding:
    """Tests for the Vault role payload."""

    def test_payload(self):
        """Test that policies are comma joined and lists are kept."""
        role = RoleBinding(
            name="flux-system",
            bound_service_account_names=["flux-system"],
            bound_service_account_namespaces=["flux-system"],
            policies=["flux-system", "reader"],
            ttl="1h",
            period="30m",
        )

        assert role.payload() == {
            "bound_service_account_names": ["flux-system"],
            "bound_service_account_namespaces": ["flux-system"],
            "policies": "flux-system,reader",
            "ttl": "1h",
            "period": "30m",
        }


@pytest.mark.unit
class TestAuthConfig:
    """Tests for AuthConfig."""

    def test_mount_path_slashes_stripped(self):
        """Test that /kubernetes/ becomes kubernetes."""
        cfg = AuthConfig(
            mount_path="/kubernetes/",
            kubernetes_host="https://k8s",
            kubernetes_ca_cert="ca",
            token_reviewer_jwt="jwt",
        )

        assert cfg.mount_path == "kubernetes"

    def test_empty_mount_path_rejected(self):
        """Test that an empty mount path fails validation."""
        with pytest.raises(ValidationError):
            AuthConfig(mount_path="/", kubernetes_host="h", kubernetes_ca_cert="c", token_reviewer_jwt="j")

    def test_config_payload(self):
        """Test the auth config body."""
        cfg = AuthConfig(kubernetes_host="https://k8s", kubernetes_ca_cert="ca", token_reviewer_jwt="jwt")

        assert cfg.config_payload() == {
            "kubernetes_host": "https://k8s",
            "kubernetes_ca_cert": "ca",
            "token_reviewer_jwt": "jwt",
        }


@pytest.mark.unit
class TestImageOverride:
    """Tests for kustomize image entries."""

    def test_to_kustomization_omits_unset_fields(self):
        """Test that only set fields are written, with kustomize key names."""
        override = ImageOverride(name="nginx", new_name="registry.example.com/nginx")

        assert override.to_kustomization() == {"name": "nginx", "newName": "registry.example.com/nginx"}

    def test_from_kustomization(self):
        """Test reading a declared entry."""
        override = ImageOverride.from_kustomization({"name": "app", "newTag": "2.0", "digest": "sha256:abc"})

        assert override.name == "app"
        assert override.new_name is None
        assert override.new_tag == "2.0"
        assert override.digest == "sha256:abc"


@pytest.mark.unit
class TestClusterMetadata:
    """Tests for ClusterMetadata."""

    def test_config_map_data(self, cluster_metadata):
        """Test the cloud facts exported to the cluster-config ConfigMap."""
        assert cluster_metadata.to_config_map_data() == {
            "aws_account_id": "123456789012",
            "aws_region": "eu-west-1",
            "cluster_name": "demo",
            "oidc_provider_arn": cluster_metadata.oidc_provider_arn,
        }

    def test_dns_domain_default(self):
        """Test that the DNS domain defaults to cluster.local."""
        assert ClusterMetadata().cluster_dns_domain == "cluster.local"
