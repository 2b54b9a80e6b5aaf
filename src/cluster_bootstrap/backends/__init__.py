# ABOUTME: Backend clients package for cluster-bootstrap
# ABOUTME: Thin adapters over IAM, the Kubernetes API and Vault

"""
Backend adapters.

    - iam.py: IamBackend protocol and the boto3 implementation
    - kube.py: Kubernetes reads and server-side apply
    - vault.py: VaultBackend protocol and the httpx client
"""
