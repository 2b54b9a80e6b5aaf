# ABOUTME: Manifest rendering package for cluster-bootstrap
# ABOUTME: Kustomize overlay, image registry rewrites and the cluster-config ConfigMap
