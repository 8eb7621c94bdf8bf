#!/usr/bin/env python3
"""
Seed and resync policies from the tenant directory.

Run once when enabling policy-based authorization, after creating an
organization or project outside the service, or to re-cascade organization
roles into existing projects after role changes.
"""

import argparse
import asyncio
import json
import sys

from shared.config import BaseConfig
from shared.logging import configure_logging
from service_policy.app.enforcement.lifecycle import EnforcerLifecycle, build_notifier, build_store_factory
from service_policy.app.persistence.directory import PostgreSQLDirectory
from service_policy.app.provisioning.manager import PolicyManager
from service_policy.app.provisioning.workflows import ProvisioningWorkflows


async def run(command: str, target_id: str = None, config: BaseConfig = None):
    """Execute one provisioning command and return its summary."""
    config = config or BaseConfig()
    lifecycle = EnforcerLifecycle(build_store_factory(config), notifier=build_notifier(config))
    directory = PostgreSQLDirectory(config.postgres_dsn)
    workflows = ProvisioningWorkflows(PolicyManager(lifecycle), directory, lifecycle)

    await directory.start()
    try:
        await lifecycle.init()
        if command == "setup-all":
            return await workflows.setup_all()
        if command == "organization":
            return await workflows.provision_organization(target_id)
        if command == "project":
            return await workflows.provision_project(target_id)
        if command == "migrate":
            return {"assignments_changed": await workflows.migrate_existing_roles()}
        if command == "token-policies":
            return {"policies_added": await workflows.setup_default_token_policies()}
        if command == "seed":
            return {"rules_added": await workflows.seed_global_policies()}
        raise ValueError(f"Unknown command: {command}")
    finally:
        await lifecycle.close()
        await directory.stop()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed and resync authorization policies.")
    parser.add_argument("--log-level", default="info", help="Log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup-all", help="Provision every organization and the default token policies")
    organization = subparsers.add_parser("organization", help="Provision one organization and its projects")
    organization.add_argument("target_id", metavar="organization_id")
    project = subparsers.add_parser("project", help="Provision one project")
    project.add_argument("target_id", metavar="project_id")
    subparsers.add_parser("migrate", help="Copy organization role assignments into every project")
    subparsers.add_parser("token-policies", help="Seed api_readonly/api_readwrite/api_admin into every project")
    subparsers.add_parser("seed", help="Bootstrap the global domain on an empty policy store")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("policy-setup", args.log_level)
    try:
        summary = asyncio.run(run(args.command, getattr(args, "target_id", None)))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[setup-policies] {args.command} failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
