"""
MaintenanceCommand — gc, stats, health

gc reclaims deprecated and superseded facts past the retention window
(dry-run lists them without touching the store). stats summarizes the
primary KB; health pings each configured remote server.
"""

from typing import Optional

from ..commands.base import BaseCommand


COMMAND_NAMES = ['gc', 'stats', 'health']


class MaintenanceCommand(BaseCommand):

    def gc(self, dry_run: bool = False, retention_days: Optional[int] = None):
        report = self.kb.gc(dry_run=dry_run, retention_days=retention_days)
        if dry_run:
            lines = [f"Would remove {len(report.candidates)} fact(s) last updated before {report.cutoff}:"]
            lines.extend(f"  meh-{c.id}  {c.path}  [{c.status}]" for c in report.candidates)
        else:
            lines = [
                f"Removed {report.removed} fact(s) last updated before {report.cutoff}",
                f"Removed {report.notifications_removed} notification(s), "
                f"{report.sessions_removed} idle session(s), {report.outbox_removed} relayed outbox row(s)",
            ]
        self.emit(report.to_dict(), lines)
        return report

    def stats(self):
        stats = self.kb.stats()
        lines = [f"Knowledge base '{stats.kb}': {stats.facts.total} fact(s)"]
        if stats.facts.by_status:
            lines.append("  by status: " + ", ".join(f"{k} {v}" for k, v in sorted(stats.facts.by_status.items())))
        if stats.facts.by_type:
            lines.append("  by type: " + ", ".join(f"{k} {v}" for k, v in sorted(stats.facts.by_type.items())))
        if stats.facts.by_root:
            lines.append("  by path:")
            lines.extend(f"    {root}  {count}" for root, count in sorted(stats.facts.by_root.items()))
        lines.append(f"  pending writes: {stats.pending}")
        lines.append(f"  notifications: {stats.notifications}")
        self.emit(stats.to_dict(), lines)
        return stats

    def health(self):
        """Ping the server of every remote KB. Failures are reported, not raised."""
        report = {}
        lines = []
        for entry in self.config.kbs.entries:
            if not entry.is_remote:
                continue
            try:
                self.kb.remote_for(entry.name).health()
                report[entry.name] = {"ok": True}
                lines.append(f"  {entry.name}: ok")
            except Exception as e:
                kind = getattr(e, "kind", "error")
                report[entry.name] = {"ok": False, "kind": kind, "error": str(e)}
                lines.append(f"  {entry.name}: {kind}: {e}")
        if not report:
            lines = ["No remote knowledge bases configured."]
        else:
            lines.insert(0, "Remote knowledge bases:")
        self.emit(report, lines)
        return report


def register_parser(subparsers):
    """Register gc, stats and health parsers."""
    p = subparsers.add_parser('gc', help='Reclaim old deprecated and superseded facts')
    p.add_argument('--dry-run', action='store_true', help='List what would be removed')
    p.add_argument('--retention-days', type=int,
                   help='Override core.gc_retention_days')

    subparsers.add_parser('stats', help='Counts by status, type and top-level path')
    subparsers.add_parser('health', help='Check remote knowledge bases')
    return p


def handle(cli, args):
    """Handle gc / stats / health dispatch."""
    cmd = cli._maintenance_cmd
    if args.command == 'gc':
        cmd.gc(dry_run=args.dry_run, retention_days=args.retention_days)
    elif args.command == 'stats':
        cmd.stats()
    else:
        cmd.health()
