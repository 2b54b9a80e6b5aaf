# ABOUTME: cluster-bootstrap package initialization
# ABOUTME: Exposes version information

"""
cluster-bootstrap - one-shot convergence of a fresh EKS cluster.

=============================================================================
WHAT DOES IT DO?
=============================================================================

A single run takes a newly created cluster to the point where Flux can
take over:

1. IAM: creates the IRSA roles the platform needs and deletes roles it
   created earlier that are no longer wanted (ownership tags mark them)
2. MANIFESTS: renders the Flux bootstrap overlay with kustomize, optionally
   moving every image to a private registry, and applies it server-side
3. VAULT: writes ACL policies, mounts the KV engine and configures
   Kubernetes auth so workloads can log in with their service accounts

Every step is idempotent. Running the installer twice against a converged
cluster changes nothing that matters.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

cluster_bootstrap/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── cli.py               <- `cluster-bootstrap` command
├── config.py            <- Configuration management (env vars, settings)
├── installer.py         <- Orchestrates the steps above
├── discovery.py         <- Account, region, OIDC provider, API host, CA
├── prerequisites.py     <- Advisory cluster checks
├── models.py            <- Desired-state models
├── errors.py            <- Exception hierarchy
├── ownership.py         <- IAM ownership tag
├── trust_policy.py      <- IRSA trust policy documents
├── assets.py            <- Base manifest tree providers
├── backends/            <- IAM (boto3), Kubernetes, Vault (httpx) clients
├── reconcilers/         <- IAM roles, Vault auth/policies/engines
├── render/              <- Overlay renderer, image rewrites, cluster-config
├── manifests/           <- Packaged base manifest tree
└── utils/
    └── logging.py       <- Structured logging with audit trails
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
