# ABOUTME: Command line entry point for cluster-bootstrap
# ABOUTME: Loads settings, configures logging and runs the installer sequence once

"""Command line entry point."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import structlog
from pydantic import ValidationError

from cluster_bootstrap import __version__
from cluster_bootstrap.config import load_settings
from cluster_bootstrap.errors import BootstrapError
from cluster_bootstrap.installer import Installer
from cluster_bootstrap.utils.logging import AuditLogger, configure_logging, get_run_id

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cluster-bootstrap",
        description="Bootstrap an EKS cluster: IAM roles, Flux manifests and Vault.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--json-logs", action="store_true", default=None, help="Emit JSON log lines")
    parser.add_argument("--audit-log", type=Path, help="Append audit records to this file")
    parser.add_argument("--image-registry", help="Move every image under this registry")
    parser.add_argument("--ca-cert-secret", help="Secret holding ca.crt for source-controller")
    parser.add_argument("--manifests-dir", type=Path, help="Base manifest tree to render")
    parser.add_argument(
        "--print-manifests",
        action="store_true",
        default=None,
        help="Write the composed manifests to stdout before applying",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Run the installer."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ValidationError as e:
        configure_logging(level="INFO")
        logger.error("Invalid configuration", error=str(e))
        sys.exit(2)

    overrides = {
        "log_level": args.log_level,
        "json_logs": args.json_logs,
        "audit_log": args.audit_log,
        "image_registry": args.image_registry,
        "ca_cert_secret": args.ca_cert_secret,
        "manifests_dir": args.manifests_dir,
        "print_manifests": args.print_manifests,
    }
    settings = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    configure_logging(level=settings.log_level, json_output=settings.json_logs)
    audit = AuditLogger(settings.audit_log)
    logger.info("cluster-bootstrap starting", version=__version__, run_id=get_run_id())

    try:
        Installer(settings, audit=audit).run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except BootstrapError as e:
        logger.error("Bootstrap failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    logger.info("Bootstrap complete", changes=audit.change_count)


if __name__ == "__main__":
    main()
