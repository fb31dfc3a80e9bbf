#!/usr/bin/env python3
"""
agentkb: operator command line for the provisioning service.

Usage:
    agentkb reconcile <userId>
    agentkb provision <userId> [--token TOKEN]
    agentkb index <userId>
    agentkb cancel <userId> [--job JOB_ID]
    agentkb destroy <userId> --yes
    agentkb connect-kb <userId> <kbId>
    agentkb add-datasource <kbId> <itemPath>
    agentkb storage-usage <userId>

Commands run in-process against the configured platform, document store
and bucket (see ``agentkb.config``); background runs are awaited.
"""
import argparse
import asyncio
import json
import sys

from agentkb.config import get_settings
from agentkb.container import build_services
from agentkb.errors import AgentKBError
from agentkb.logging_config import configure_logging
from agentkb.orchestration.resources import connect_knowledge_base
from agentkb.orchestration.workflow import root_prefix
from agentkb.services.genai_client import resource_id


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _with_services(handler, args):
    services = build_services(get_settings())
    try:
        return await handler(services, args)
    finally:
        await services.aclose()


async def cmd_reconcile(services, args):
    """Validate the user's agent/KB references and print the outcome."""
    result = await services.reconciler.reconcile(args.user_id)
    if result.user_doc is None:
        print(f"❌ User {args.user_id} not found")
        return 1
    _print({k: v for k, v in result.to_dict().items() if k != "userDoc"})
    return 0


async def cmd_provision(services, args):
    """Provision the user's agent and wait for the run to finish."""
    if args.token:
        await services.provisioner.provision(args.user_id, args.token)
        task = services.provision_registry.active_task(args.user_id)
        if task is not None:
            await task
    else:
        await services.provisioner.run(args.user_id)
    entry = services.provision_registry.get(args.user_id)
    _print(entry.to_dict() if entry else {"status": "none"})
    return 0 if entry and entry.status == "completed" else 1


async def cmd_index(services, args):
    """Update the user's knowledge base and wait for indexing to finish."""
    await services.indexer.run_update(args.user_id)
    entry = services.index_registry.get(args.user_id)
    _print(entry.to_dict() if entry else {"status": "none"})
    return 0 if entry and entry.status == "completed" else 1


async def cmd_cancel(services, args):
    _print(await services.indexer.cancel_indexing(args.user_id, args.job))
    return 0


async def cmd_destroy(services, args):
    """Delete the user and everything they own."""
    if not args.yes:
        print("❌ Refusing to delete without --yes")
        return 1
    report = await services.destroyer.delete_user_and_resources(args.user_id)
    _print(report)
    return 0 if not report["errors"] else 1


async def cmd_connect_kb(services, args):
    _print(
        await connect_knowledge_base(
            services.genai, services.users, services.reconciler, args.user_id, args.kb_id
        )
    )
    return 0


async def cmd_add_datasource(services, args):
    settings = services.settings
    created = await services.genai.kb.add_data_source(
        args.kb_id,
        bucket_name=args.bucket or settings.bucket_name,
        item_path=args.item_path,
        region=settings.do_region,
    )
    print(f"✅ Data source {resource_id(created)} added to {args.kb_id}")
    return 0


async def cmd_storage_usage(services, args):
    total = await services.storage.prefix_size(root_prefix(args.user_id))
    print(f"{args.user_id}: {total} bytes ({total / (1024 * 1024):.2f} MB)")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="agentkb",
        description="Provision and maintain per-user agents and knowledge bases",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", help="Command")

    p = sub.add_parser("reconcile", help="Check a user's agent and KB against the platform")
    p.add_argument("user_id")
    p.set_defaults(func=cmd_reconcile)

    p = sub.add_parser("provision", help="Provision a user's agent")
    p.add_argument("user_id")
    p.add_argument("--token", default=None, help="One-time provisioning token (checked when given)")
    p.set_defaults(func=cmd_provision)

    p = sub.add_parser("index", help="Move files and (re)index a user's knowledge base")
    p.add_argument("user_id")
    p.set_defaults(func=cmd_index)

    p = sub.add_parser("cancel", help="Cancel indexing and move files back")
    p.add_argument("user_id")
    p.add_argument("--job", default=None, help="Job id (defaults to the recorded one)")
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("destroy", help="Delete a user and all their resources")
    p.add_argument("user_id")
    p.add_argument("--yes", action="store_true", help="Confirm deletion")
    p.set_defaults(func=cmd_destroy)

    p = sub.add_parser("connect-kb", help="Record an existing KB for a user and attach it to their agent")
    p.add_argument("user_id")
    p.add_argument("kb_id")
    p.set_defaults(func=cmd_connect_kb)

    p = sub.add_parser("add-datasource", help="Add a folder data source to a KB")
    p.add_argument("kb_id")
    p.add_argument("item_path")
    p.add_argument("--bucket", default=None, help="Bucket name (defaults to the configured bucket)")
    p.set_defaults(func=cmd_add_datasource)

    p = sub.add_parser("storage-usage", help="Bytes stored for a user")
    p.add_argument("user_id")
    p.set_defaults(func=cmd_storage_usage)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, settings.log_json)
    try:
        code = asyncio.run(_with_services(args.func, args))
    except AgentKBError as e:
        print(f"❌ {e}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
