# ABOUTME: Unit tests for cluster metadata discovery
# ABOUTME: Mocks the boto3 session and the Kubernetes client

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoRegionError
from kubernetes.client.rest import ApiException

from cluster_bootstrap.discovery import (
    discover,
    discover_aws,
    discover_kube,
    infer_cluster_name,
    oidc_provider_arn,
)
from cluster_bootstrap.errors import DiscoveryError

ENVIRON = {"KUBERNETES_SERVICE_HOST": "demo.gr7.eu-west-1.eks.amazonaws.com"}
ISSUER = "https://oidc.eks.eu-west-1.amazonaws.com/id/ABC123"


@pytest.fixture
def session():
    """boto3 session with STS and EKS clients."""
    sts = MagicMock()
    sts.get_caller_identity.return_value = {"Account": "123456789012"}
    eks = MagicMock()
    eks.describe_cluster.return_value = {"cluster": {"identity": {"oidc": {"issuer": ISSUER}}}}
    s = MagicMock(region_name="eu-west-1")
    s.client.side_effect = lambda name: {"sts": sts, "eks": eks}[name]
    s.sts, s.eks = sts, eks
    return s


@pytest.mark.unit
class TestInferClusterName:
    """Tests for infer_cluster_name."""

    @pytest.mark.parametrize(
        "host",
        [
            "demo.gr7.eu-west-1.eks.amazonaws.com",
            "https://demo.gr7.eu-west-1.eks.amazonaws.com",
            "https://demo.gr7.eu-west-1.eks.amazonaws.com:443/",
        ],
    )
    def test_eks_hosts(self, host):
        """Test that the first label is the cluster name."""
        assert infer_cluster_name(host) == "demo"

    def test_missing_host(self):
        """Test that running outside a cluster is an error."""
        with pytest.raises(DiscoveryError, match="not running inside"):
            infer_cluster_name(None)

    def test_not_eks(self):
        """Test that other hostnames are rejected."""
        with pytest.raises(DiscoveryError, match="doesn't look like an EKS endpoint"):
            infer_cluster_name("10.100.0.1")


@pytest.mark.unit
class TestDiscoverAws:
    """Tests for discover_aws."""

    def test_facts(self, session):
        """Test the discovered AWS facts."""
        facts = discover_aws(session, ENVIRON)

        assert facts == {
            "account_id": "123456789012",
            "region": "eu-west-1",
            "cluster_name": "demo",
            "oidc_provider_arn": "arn:aws:iam::123456789012:oidc-provider/oidc.eks.eu-west-1.amazonaws.com/id/ABC123",
        }
        session.eks.describe_cluster.assert_called_once_with(name="demo")

    def test_no_region(self, session):
        """Test that a missing region is fatal."""
        session.region_name = None

        with pytest.raises(DiscoveryError, match="region"):
            discover_aws(session, ENVIRON)

    def test_sts_failure(self, session):
        """Test that STS errors become DiscoveryError."""
        session.sts.get_caller_identity.side_effect = NoRegionError()

        with pytest.raises(DiscoveryError, match="caller identity"):
            discover_aws(session, ENVIRON)

    def test_describe_cluster_failure(self, session):
        """Test that EKS errors become DiscoveryError."""
        session.eks.describe_cluster.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "No cluster found"}},
            "DescribeCluster",
        )

        with pytest.raises(DiscoveryError, match="describe EKS cluster demo"):
            discover_aws(session, ENVIRON)

    def test_missing_issuer(self, session):
        """Test that a cluster without OIDC identity is fatal."""
        session.eks.describe_cluster.return_value = {"cluster": {}}

        with pytest.raises(DiscoveryError, match="OIDC issuer"):
            discover_aws(session, ENVIRON)

    def test_oidc_provider_arn(self):
        """Test that the scheme is dropped from the issuer."""
        assert oidc_provider_arn("1", "https://oidc.example.com/id/X") == "arn:aws:iam::1:oidc-provider/oidc.example.com/id/X"


@pytest.mark.unit
class TestDiscoverKube:
    """Tests for discover_kube."""

    def test_facts(self, fake_kube):
        """Test the discovered Kubernetes facts with the default DNS domain."""
        facts = discover_kube(fake_kube)

        assert facts["kube_version"] == "v1.32.3-eks-bc803b4"
        assert facts["host"] == fake_kube.host
        assert facts["ca_cert_base64"] == fake_kube.ca_cert_base64()
        assert facts["cluster_dns_domain"] == "cluster.local"

    def test_dns_domain_from_kube_dns(self, fake_kube):
        """Test that clusterDomain in kube-dns overrides the default."""
        fake_kube.config_maps[("kube-system", "kube-dns")] = {"clusterDomain": "corp.local"}

        assert discover_kube(fake_kube)["cluster_dns_domain"] == "corp.local"

    def test_api_error(self):
        """Test that API errors become DiscoveryError."""
        kube = MagicMock()
        kube.server_version.side_effect = ApiException(status=403)

        with pytest.raises(DiscoveryError):
            discover_kube(kube)


@pytest.mark.unit
class TestDiscover:
    """Tests for discover."""

    def test_metadata(self, session, fake_kube):
        """Test that AWS and Kubernetes facts form ClusterMetadata."""
        metadata = discover(fake_kube, session, ENVIRON)

        assert metadata.cluster_name == "demo"
        assert metadata.region == "eu-west-1"
        assert metadata.host == fake_kube.host
