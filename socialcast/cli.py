"""CLI entry point for socialcast.

Usage:
    socialcast status [--owner OWNER]
    socialcast auth-url PLATFORM --redirect-uri URI
    socialcast connect PLATFORM --code CODE --state STATE --redirect-uri URI [--code-verifier V]
    socialcast disconnect PLATFORM [--no-revoke]
    socialcast create --text TEXT --platforms twitter,linkedin [--at ISO8601] [--hashtags a,b]
    socialcast create --template TEMPLATE_ID [--var key=value ...] [--at ISO8601]
    socialcast create-template --name NAME --text TEXT --platforms twitter [--required a,b]
    socialcast templates
    socialcast schedule-series POST_ID... --start ISO8601 [--every weekly] [--time HH:MM]
    socialcast publish POST_ID
    socialcast posts [--status STATUS]
    socialcast work-items [--status STATUS] [--stale]
    socialcast tick
    socialcast run
    socialcast reconcile ITEM_ID (--retry | --fail)

State persists between invocations only when ``data_dir`` is configured.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

from socialcast.capabilities import Platform
from socialcast.config import SocialcastConfig, load_config
from socialcast.factory import Socialcast, build_app
from socialcast.models import CreatePostRequest, PostStatus, TemplateVariable, WorkItemStatus
from socialcast.orchestrator import PostError
from socialcast.work_queue import Frequency

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _platforms(value: str) -> list[Platform]:
    try:
        return [Platform(p.strip()) for p in value.split(",") if p.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _when(value: str) -> datetime:
    try:
        when = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an ISO 8601 time: {value}") from None
    return when if when.tzinfo else when.replace(tzinfo=timezone.utc)


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _pair(value: str) -> tuple[str, str]:
    key, sep, rest = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {value}")
    return key.strip(), rest


def cmd_status(app: Socialcast, cfg: SocialcastConfig, owner: str) -> None:
    print(f"Live mode: {cfg.live_mode}")
    print(f"Data dir:  {cfg.data_dir or '(in memory)'}")
    for platform in Platform:
        if platform not in cfg.platforms:
            print(f"{platform.value:10} not configured")
            continue
        status = app.credentials.get_auth_status(owner, platform)
        print(f"{platform.value:10} configured, {status.value}")


def cmd_auth_url(app: Socialcast, platform: Platform, redirect_uri: str) -> None:
    auth = app.credentials.generate_auth_url(platform, redirect_uri)
    print(auth.url)
    print(f"state: {auth.state}")
    if auth.code_verifier:
        print(f"code verifier: {auth.code_verifier}")


def cmd_connect(app: Socialcast, owner: str, args: argparse.Namespace) -> int:
    result = app.credentials.connect(
        owner, args.tenant, args.platform, args.code, args.state,
        args.redirect_uri, args.code_verifier,
    )
    if not result.success:
        print(f"Connection failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Connected {args.platform.value} as {result.account_info.username}")
    return 0


def cmd_create(app: Socialcast, owner: str, args: argparse.Namespace) -> None:
    if args.template:
        request = app.orchestrator.post_from_template(owner, args.template, dict(args.var))
        request.tenant_id = args.tenant
        request.scheduled_at = args.at
    elif args.text and args.platforms:
        request = CreatePostRequest(
            content=args.text,
            platforms=args.platforms,
            tenant_id=args.tenant,
            hashtags=args.hashtags,
            mentions=args.mentions,
            scheduled_at=args.at,
        )
    else:
        raise PostError("create needs --text and --platforms, or --template")
    post = app.orchestrator.create_post(owner, request)
    print(f"{post.id} {post.status.value}")


def cmd_create_template(app: Socialcast, owner: str, args: argparse.Namespace) -> None:
    variables = {key: TemplateVariable(key, required=True) for key in args.required}
    for key, value in args.default:
        variables.setdefault(key, TemplateVariable(key)).default = value
    template = app.orchestrator.create_template(
        owner, args.name, args.text, args.platforms,
        hashtags=args.hashtags, description=args.description, category=args.category,
        variables=list(variables.values()),
    )
    print(f"{template.id} {template.name}")


def cmd_templates(app: Socialcast, owner: str) -> None:
    templates = app.orchestrator.list_templates(owner)
    print(f"Templates: {len(templates)}")
    for t in templates:
        keys = ",".join(v.key for v in t.variables) or "-"
        print(f"  {t.id} {t.name} [{t.category or '-'}] vars={keys}")


def cmd_schedule_series(app: Socialcast, owner: str, args: argparse.Namespace) -> None:
    posts = app.orchestrator.schedule_series(
        owner, args.post_ids, args.start, args.every, time_of_day=args.time,
    )
    for p in posts:
        print(f"  {p.id} {p.scheduled_at.isoformat()}")


def cmd_publish(app: Socialcast, owner: str, post_id: str) -> int:
    outcome = app.orchestrator.publish(owner, post_id)
    for platform, r in outcome.results.items():
        label = "OK" if r.success else "FAILED"
        print(f"  [{label}] {platform.value}: {r.url or r.platform_post_id or r.error or 'N/A'}")
    return 0 if outcome.success else 1


def cmd_posts(app: Socialcast, owner: str, status: str | None) -> None:
    posts = app.orchestrator.list_posts(owner, status=PostStatus(status) if status else None)
    print(f"Posts: {len(posts)}")
    for p in posts:
        when = p.scheduled_at.isoformat() if p.scheduled_at else "-"
        print(f"  {p.id} [{p.status.value}] {','.join(x.value for x in p.platforms)} {when}")


def cmd_work_items(app: Socialcast, owner: str, status: str | None, stale: bool) -> None:
    if stale:
        items = app.dispatcher.stale_items()
    else:
        items = app.work_queue.items_for(owner, WorkItemStatus(status) if status else None)
    print(f"Work items: {len(items)}")
    for i in items:
        print(f"  {i.id} post={i.post_id} [{i.status.value}] due={i.due_at.isoformat()} "
              f"attempts={i.attempts} {i.error}")


def cmd_tick(app: Socialcast) -> None:
    try:
        items = app.dispatcher.tick(wait=True)
    finally:
        app.dispatcher.stop()
    print(f"Processed {len(items)} work items")
    for i in items:
        print(f"  {i.id} post={i.post_id} [{i.status.value}] {i.error}")


def cmd_run(app: Socialcast) -> None:
    app.dispatcher.start()
    try:
        while app.dispatcher.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping dispatcher")
    finally:
        app.dispatcher.stop()


def cmd_reconcile(app: Socialcast, item_id: str, retry: bool) -> int:
    try:
        item = app.dispatcher.reconcile(item_id, retry=retry)
    except KeyError:
        print(f"No work item {item_id}", file=sys.stderr)
        return 1
    if item is None:
        print(f"Work item {item_id} is not in a reconcilable state", file=sys.stderr)
        return 1
    print(f"{item.id} [{item.status.value}]")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="socialcast", description="Social post orchestration CLI")
    parser.add_argument("--config", type=Path, default=None, help="Config YAML file")
    parser.add_argument("--owner", default="cli", help="Owner id to act as")
    parser.add_argument("--tenant", default="default")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show configuration and connection status")

    auth_p = sub.add_parser("auth-url", help="Print an OAuth authorization URL")
    auth_p.add_argument("platform", type=Platform)
    auth_p.add_argument("--redirect-uri", required=True)

    connect_p = sub.add_parser("connect", help="Complete an OAuth callback")
    connect_p.add_argument("platform", type=Platform)
    connect_p.add_argument("--code", required=True)
    connect_p.add_argument("--state", required=True)
    connect_p.add_argument("--redirect-uri", required=True)
    connect_p.add_argument("--code-verifier", default=None)

    disconnect_p = sub.add_parser("disconnect", help="Disconnect a platform")
    disconnect_p.add_argument("platform", type=Platform)
    disconnect_p.add_argument("--no-revoke", action="store_true")

    create_p = sub.add_parser("create", help="Create a draft or scheduled post")
    create_p.add_argument("--text")
    create_p.add_argument("--platforms", type=_platforms, help="Comma-separated platform list")
    create_p.add_argument("--hashtags", type=_csv, default=[])
    create_p.add_argument("--mentions", type=_csv, default=[])
    create_p.add_argument("--at", type=_when, default=None, help="Schedule time (ISO 8601)")
    create_p.add_argument("--template", default=None, help="Fill this template instead of --text")
    create_p.add_argument("--var", type=_pair, action="append", default=[],
                          help="Template value as KEY=VALUE (repeatable)")

    template_p = sub.add_parser("create-template", help="Save a reusable post template")
    template_p.add_argument("--name", required=True)
    template_p.add_argument("--text", required=True, help="Body with {{key}} placeholders")
    template_p.add_argument("--platforms", type=_platforms, required=True)
    template_p.add_argument("--hashtags", type=_csv, default=[])
    template_p.add_argument("--description", default="")
    template_p.add_argument("--category", default="")
    template_p.add_argument("--required", type=_csv, default=[], help="Required variable keys")
    template_p.add_argument("--default", type=_pair, action="append", default=[],
                            help="Variable default as KEY=VALUE (repeatable)")

    sub.add_parser("templates", help="List templates")

    series_p = sub.add_parser("schedule-series", help="Schedule posts as a recurring series")
    series_p.add_argument("post_ids", nargs="+")
    series_p.add_argument("--start", type=_when, required=True, help="First date (ISO 8601)")
    series_p.add_argument("--every", choices=[f.value for f in Frequency], default="weekly")
    series_p.add_argument("--time", default="10:00", help="Time of day, HH:MM")

    publish_p = sub.add_parser("publish", help="Publish a post now")
    publish_p.add_argument("post_id")

    posts_p = sub.add_parser("posts", help="List posts")
    posts_p.add_argument("--status", choices=[s.value for s in PostStatus])

    items_p = sub.add_parser("work-items", help="List scheduled work items")
    items_p.add_argument("--status", choices=[s.value for s in WorkItemStatus])
    items_p.add_argument("--stale", action="store_true", help="Only items stuck in processing")

    sub.add_parser("tick", help="Dispatch due posts once")
    sub.add_parser("run", help="Run the dispatcher until interrupted")

    reconcile_p = sub.add_parser("reconcile", help="Resolve a work item stuck in processing")
    reconcile_p.add_argument("item_id")
    mode = reconcile_p.add_mutually_exclusive_group(required=True)
    mode.add_argument("--retry", action="store_true")
    mode.add_argument("--fail", action="store_true")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    cfg = load_config(args.config)
    configure_logging(cfg.log_level)
    app = build_app(cfg)

    try:
        if args.command == "status":
            cmd_status(app, cfg, args.owner)
        elif args.command == "auth-url":
            cmd_auth_url(app, args.platform, args.redirect_uri)
        elif args.command == "connect":
            return cmd_connect(app, args.owner, args)
        elif args.command == "disconnect":
            app.credentials.disconnect(args.owner, args.platform, revoke=not args.no_revoke)
            print(f"Disconnected {args.platform.value}")
        elif args.command == "create":
            cmd_create(app, args.owner, args)
        elif args.command == "create-template":
            cmd_create_template(app, args.owner, args)
        elif args.command == "templates":
            cmd_templates(app, args.owner)
        elif args.command == "schedule-series":
            cmd_schedule_series(app, args.owner, args)
        elif args.command == "publish":
            return cmd_publish(app, args.owner, args.post_id)
        elif args.command == "posts":
            cmd_posts(app, args.owner, args.status)
        elif args.command == "work-items":
            cmd_work_items(app, args.owner, args.status, args.stale)
        elif args.command == "tick":
            cmd_tick(app)
        elif args.command == "run":
            cmd_run(app)
        elif args.command == "reconcile":
            return cmd_reconcile(app, args.item_id, args.retry)
    except PostError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
