# ABOUTME: Reconcilers package for cluster-bootstrap
# ABOUTME: Converges IAM roles and Vault auth, policies and engines

"""
Reconcilers compare desired state with what a backend holds and write only
what differs. They stop at the first failure and are safe to re-run.

    - iam.py: IRSA roles plus ownership-tagged garbage collection
    - vault_auth.py: Kubernetes auth mount, config and roles
    - vault_policy.py: ACL policies
    - vault_engine.py: KV v2 secrets engine
"""
