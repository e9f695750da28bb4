#!/usr/bin/env python3
"""
flowops/dashboard.py - Rich CLI dashboard showing secret ages and snapshot history.

Usage:
    flow-dashboard                   # One-shot table
    flow-dashboard --watch           # Auto-refresh every 30s
    flow-dashboard --interval 60     # Custom refresh interval

Last rotation comes from the flowops.io/rotated-at annotation written by every
rotation; secrets never rotated by this tool fall back to their creation time.
"""
import argparse
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from kubernetes.config import ConfigException
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from flowops.backends.kubernetes_backend import KubernetesBackend
from flowops.config import RotationConfig
from flowops.models import SecretRef
from flowops.targets import build_targets, known_secrets

console = Console()
log = logging.getLogger(__name__)

ROTATION_DUE_DAYS = 90   # quarterly rotation
ROTATION_WARN_DAYS = 75  # warn 15 days before due
SNAPSHOTS_SHOWN = 5


def get_secret_metadata(backend: KubernetesBackend, refs: list[SecretRef]) -> list[dict[str, Any]]:
    results = []
    for ref in refs:
        try:
            results.append({"secret": str(ref), "last_rotated": backend.last_rotated(ref.namespace, ref.name), "error": None})
        except KeyError:
            results.append({"secret": str(ref), "last_rotated": None, "error": "not found"})
        except Exception as e:
            results.append({"secret": str(ref), "last_rotated": None, "error": str(e)})
    return results


def parse_age(last_rotated: str | None, now: datetime | None = None) -> tuple[int | None, str]:
    """Parse ISO timestamp and return (age_days, display_string)."""
    if not last_rotated:
        return None, "unknown"
    try:
        dt = datetime.fromisoformat(last_rotated.replace("Z", "+00:00"))
    except ValueError:
        return None, "?"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    age = ((now or datetime.now(timezone.utc)) - dt).days
    return age, f"{age}d"


def status_indicator(age_days: int | None) -> Text:
    if age_days is None:
        return Text("UNKNOWN", style="yellow")
    if age_days >= ROTATION_DUE_DAYS:
        return Text("DUE", style="bold red")
    if age_days >= ROTATION_WARN_DAYS:
        return Text("WARN", style="bold yellow")
    return Text("OK", style="green")


def list_snapshots(backup_root: Path) -> list[tuple[str, int]]:
    """Newest secret snapshots as (directory name, number of exported secrets)."""
    if not backup_root.is_dir():
        return []
    dirs = sorted((p for p in backup_root.iterdir() if p.is_dir()), reverse=True)
    return [(d.name, len(list(d.glob("*.yaml")))) for d in dirs[:SNAPSHOTS_SHOWN]]


def build_table(environment: str, metadata: list[dict[str, Any]]) -> Table:
    table = Table(
        title=f"Flow Credential Rotation Dashboard  [dim]({environment})[/dim]",
        show_header=True,
        header_style="bold cyan",
        border_style="blue",
        expand=True,
    )
    table.add_column("Secret", style="dim", min_width=30)
    table.add_column("Last Rotated", justify="center", min_width=20)
    table.add_column("Age", justify="center", min_width=6)
    table.add_column("Status", justify="center", min_width=8)

    for item in metadata:
        if item["error"]:
            table.add_row(item["secret"], f"[red]{item['error'][:30]}[/red]", "?", Text("ERROR", style="red"))
            continue
        age_days, age_str = parse_age(item["last_rotated"])
        table.add_row(
            item["secret"],
            item["last_rotated"][:19] if item["last_rotated"] else "unknown",
            age_str,
            status_indicator(age_days),
        )

    table.caption = (
        f"[dim]Rotation policy: quarterly (every {ROTATION_DUE_DAYS} days) | "
        f"WARN at {ROTATION_WARN_DAYS} days | Run: flow-rotate full[/dim]"
    )
    return table


def build_snapshot_table(backup_root: Path) -> Table:
    table = Table(title=f"Secret snapshots in {backup_root}", header_style="bold cyan", border_style="blue")
    table.add_column("Snapshot")
    table.add_column("Secrets", justify="right")
    for name, count in list_snapshots(backup_root):
        table.add_row(name, str(count))
    if not table.row_count:
        table.add_row("[dim]none[/dim]", "")
    return table


def render(config: RotationConfig, backend: KubernetesBackend) -> Group:
    refs = known_secrets(build_targets(config))
    return Group(
        build_table(config.environment, get_secret_metadata(backend, refs)),
        build_snapshot_table(config.backup_root),
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Flow credential rotation dashboard")
    parser.add_argument("--watch", action="store_true", help="Auto-refresh every 30s")
    parser.add_argument("--interval", type=int, default=30, help="Refresh interval in seconds")
    args = parser.parse_args(argv)

    config = RotationConfig.from_env()
    try:
        backend = KubernetesBackend(context=config.kube_context)
    except ConfigException as e:
        log.error(f"No Kubernetes configuration available: {e}")
        return 1

    if args.watch:
        with Live(console=console, refresh_per_second=0.1) as live:
            while True:
                live.update(render(config, backend))
                time.sleep(args.interval)
    console.print(render(config, backend))
    console.print("\n[dim]Commands:[/dim]")
    console.print("  [cyan]flow-rotate full[/cyan]")
    console.print("  [cyan]flow-rotate rollback <snapshot-dir>[/cyan]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
