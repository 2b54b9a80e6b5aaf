# ABOUTME: Unit tests for IRSA trust policy generation
# ABOUTME: Tests document shape, determinism and service account validation

import json

import pytest

from cluster_bootstrap.errors import InputValidationError
from cluster_bootstrap.models import RoleSpec
from cluster_bootstrap.trust_policy import canonical_json, generate_trust_policy, oidc_issuer

OIDC_ARN = "arn:aws:iam::123456789012:oidc-provider/oidc.eks.eu-west-1.amazonaws.com/id/ABC123"
ISSUER = "oidc.eks.eu-west-1.amazonaws.com/id/ABC123"


def make_spec(service_account: str = "flux-system:source-controller", **kwargs) -> RoleSpec:
    return RoleSpec(
        name="demo-role",
        oidc_provider_arn=OIDC_ARN,
        service_account=service_account,
        **kwargs,
    )


@pytest.mark.unit
class TestOidcIssuer:
    """Tests for deriving the issuer from a provider ARN."""

    def test_strips_arn_prefix(self):
        """Test that the issuer is the part after oidc-provider/."""
        assert oidc_issuer(OIDC_ARN) == ISSUER

    def test_non_arn_returned_unchanged(self):
        """Test that values which are not provider ARNs pass through."""
        assert oidc_issuer(ISSUER) == ISSUER


@pytest.mark.unit
class TestGenerateTrustPolicy:
    """Tests for generate_trust_policy."""

    def test_document_shape(self):
        """Test the statement allows web identity for the bound subject and audience."""
        doc = json.loads(generate_trust_policy(make_spec()))

        assert doc["Version"] == "2012-10-17"
        [statement] = doc["Statement"]
        assert statement["Effect"] == "Allow"
        assert statement["Principal"] == {"Federated": OIDC_ARN}
        assert statement["Action"] == "sts:AssumeRoleWithWebIdentity"
        assert statement["Condition"]["StringEquals"] == {
            f"{ISSUER}:sub": "system:serviceaccount:flux-system:source-controller",
            f"{ISSUER}:aud": "sts.amazonaws.com",
        }

    def test_custom_audience(self):
        """Test that the audience condition follows the spec."""
        doc = json.loads(generate_trust_policy(make_spec(audience="vault")))

        assert doc["Statement"][0]["Condition"]["StringEquals"][f"{ISSUER}:aud"] == "vault"

    def test_deterministic(self):
        """Test that equal specs produce byte-identical documents."""
        assert generate_trust_policy(make_spec()) == generate_trust_policy(make_spec())

    def test_canonical_encoding(self):
        """Test that the output is the canonical encoding of itself."""
        text = generate_trust_policy(make_spec())

        assert canonical_json(json.loads(text)) == text
        assert " " not in text

    @pytest.mark.parametrize(
        "service_account",
        ["flux-system", "flux-system:source-controller:extra", ":source-controller", "flux-system:", ""],
    )
    def test_malformed_service_account_rejected(self, service_account):
        """Test that subjects not splitting into two non-empty parts are rejected."""
        with pytest.raises(InputValidationError) as exc_info:
            generate_trust_policy(make_spec(service_account))

        assert "demo-role" in str(exc_info.value)


@pytest.mark.unit
class TestCanonicalJson:
    """Tests for canonical_json."""

    def test_key_order_does_not_matter(self):
        """Test that dicts with different insertion order encode identically."""
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})

    def test_compact_separators(self):
        """Test that no whitespace is emitted."""
        assert canonical_json({"a": {"b": "c"}}) == '{"a":{"b":"c"}}'
