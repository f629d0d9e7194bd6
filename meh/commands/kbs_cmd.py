"""
KbsCommand — Manage knowledge bases on a remote meh server

    meh kbs list                           KBs the server hosts
    meh kbs info team-notes                one KB
    meh kbs create team-notes "Team Notes" [--visibility private]
    meh kbs delete team-notes [--force]
    meh kbs use team-notes [--as team]     declare it in kbs.entries
    meh kbs forget team                    drop the declaration
    meh kbs ping                           server health

With one configured server it is used implicitly; otherwise pass --server.
"""

import sys
from typing import List, Optional

from ..commands.base import BaseCommand
from ..config import KbConfig, ServerConfig, WRITE_MODES
from ..errors import NotFound
from ..federation.remote import RemoteKb, ServerClient


COMMAND_NAME = 'kbs'

VISIBILITIES = ('public', 'private')


class KbsCommand(BaseCommand):

    def server(self, name: Optional[str] = None) -> ServerConfig:
        servers = self.config.servers
        if name:
            server = self.config.server(name)
            if server is None:
                raise NotFound(f"Unknown server '{name}'", operation="kbs", target=name,
                               suggestions=[s.name for s in servers])
            return server
        if not servers:
            raise ValueError(
                f"No servers configured. Add one under 'servers:' in {self.config_manager.project_config_path}"
            )
        if len(servers) > 1:
            raise ValueError(
                f"Several servers configured ({', '.join(s.name for s in servers)}); pass --server"
            )
        return servers[0]

    def client(self, server_name: Optional[str] = None) -> ServerClient:
        return ServerClient(self.server(server_name))

    def _declared(self, server: ServerConfig) -> dict:
        """slug -> local kb name, for KBs of `server` already in kbs.entries."""
        return {
            e.slug: e.name for e in self.config.kbs.entries
            if e.is_remote and e.server == server.name
        }

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    def list(self, server_name: Optional[str] = None) -> List[RemoteKb]:
        client = self.client(server_name)
        kbs = client.list_kbs()
        declared = self._declared(client.server)

        if not kbs:
            lines = [f"No knowledge bases on {client.server.name}.",
                     "-> Create one: meh kbs create <slug> <name>"]
        else:
            lines = [f"Knowledge bases on {client.server.name}:"]
            for kb in kbs:
                marker = "*" if kb.slug in declared else " "
                line = f"  {marker} {kb.slug}  {kb.name}  [{kb.visibility}]"
                if kb.slug in declared:
                    line += f"  (as '{declared[kb.slug]}')"
                lines.append(line)
                if kb.description:
                    lines.append(f"      {kb.description}")
            lines.append(f"{len(kbs)} knowledge base(s)")
        self.emit({
            "server": client.server.name,
            "knowledge_bases": [dict(kb.to_dict(), declared_as=declared.get(kb.slug)) for kb in kbs],
        }, lines)
        return kbs

    def info(self, slug: str, server_name: Optional[str] = None) -> RemoteKb:
        client = self.client(server_name)
        kb = client.get_kb(slug)
        lines = [
            f"Knowledge base {kb.slug} on {client.server.name}",
            f"  Name:        {kb.name}",
            f"  Description: {kb.description or '(none)'}",
            f"  Visibility:  {kb.visibility}",
            f"  Owner:       {kb.owner_id}",
            f"  Created:     {kb.created_at}",
            f"  ID:          {kb.id}",
        ]
        self.emit(kb.to_dict(), lines)
        return kb

    def create(self, slug: str, name: str, description: Optional[str] = None,
               visibility: str = "public", server_name: Optional[str] = None) -> RemoteKb:
        client = self.client(server_name)
        kb = client.create_kb(slug, name, description=description, visibility=visibility)
        self.emit(kb.to_dict(), [
            f"Created knowledge base {kb.slug} on {client.server.name}",
            f"-> Use it: meh kbs use {kb.slug}",
        ])
        return kb

    def delete(self, slug: str, force: bool = False, server_name: Optional[str] = None) -> bool:
        client = self.client(server_name)
        if not force and not _confirm(f"Delete knowledge base '{slug}' on {client.server.name}? "
                                      f"This cannot be undone. [y/N] "):
            self.emit({"deleted": False, "slug": slug}, ["Cancelled."])
            return False

        client.delete_kb(slug)
        forgotten = self._declared(client.server).get(slug)
        if forgotten:
            error = self.config_manager.remove_kb(forgotten)
            if error:
                raise ValueError(error)

        lines = [f"Deleted knowledge base {slug} on {client.server.name}"]
        if forgotten:
            lines.append(f"  removed '{forgotten}' from kbs.entries")
        self.emit({"deleted": True, "slug": slug, "forgotten": forgotten}, lines)
        return True

    def ping(self, server_name: Optional[str] = None) -> dict:
        client = self.client(server_name)
        health = client.health()
        lines = [f"{client.server.name}: ok"]
        lines.extend(f"  {k}: {v}" for k, v in health.items())
        self.emit(dict(health, server=client.server.name), lines)
        return health

    # -------------------------------------------------------------------------
    # Local declarations
    # -------------------------------------------------------------------------

    def use(self, slug: str, name: Optional[str] = None, write: str = "ask",
            server_name: Optional[str] = None, scope: str = "project") -> KbConfig:
        """
        Declare a remote KB so search, federation and writes can reach it.

        Raises:
            NotFound: the server has no such KB
            ValueError: the declaration would make the config invalid
        """
        client = self.client(server_name)
        client.get_kb(slug)

        entry = KbConfig(name=name or slug, kind="remote", write=write,
                         server=client.server.name, slug=slug)
        error = self.config_manager.add_kb(entry, scope)
        if error:
            raise ValueError(error)
        self.emit(entry.to_dict(), [
            f"Using {client.server.name}/{slug} as '{entry.name}' (write: {write})",
            f"-> Search it: meh search <text> --federated --sources {entry.name}",
        ])
        return entry

    def forget(self, name: str, scope: str = "project") -> None:
        error = self.config_manager.remove_kb(name, scope)
        if error:
            raise ValueError(error)
        self.emit({"forgotten": name}, [f"Removed '{name}' from kbs.entries"])


def _confirm(prompt: str) -> bool:
    sys.stderr.write(prompt)
    sys.stderr.flush()
    answer = sys.stdin.readline()
    return answer.strip().lower() in ("y", "yes")


def register_parser(subparsers):
    """Register kbs parser with its actions."""
    p = subparsers.add_parser('kbs', help='Manage knowledge bases on a remote server')
    p.add_argument('--server', help='Server name from config (default: the only one)')
    actions = p.add_subparsers(dest='action')

    actions.add_parser('list', help='List knowledge bases on the server')

    info = actions.add_parser('info', help='Show one knowledge base')
    info.add_argument('slug')

    create = actions.add_parser('create', help='Create a knowledge base')
    create.add_argument('slug', help='URL-friendly slug (e.g., team-notes)')
    create.add_argument('name', help='Display name')
    create.add_argument('--description', '-d', help='Description')
    create.add_argument('--visibility', default='public', choices=VISIBILITIES)

    delete = actions.add_parser('delete', help='Delete a knowledge base')
    delete.add_argument('slug')
    delete.add_argument('--force', '-f', action='store_true', help='Skip confirmation')

    use = actions.add_parser('use', help='Declare a server knowledge base in kbs.entries')
    use.add_argument('slug')
    use.add_argument('--as', dest='name', help='Local name (default: the slug)')
    use.add_argument('--write', default='ask', choices=WRITE_MODES,
                     help='Write mode for the declaration (default: ask)')
    use.add_argument('--user', action='store_true', help='Save to user config instead of project')

    forget = actions.add_parser('forget', help='Remove a declared knowledge base')
    forget.add_argument('name')
    forget.add_argument('--user', action='store_true', help='Save to user config instead of project')

    actions.add_parser('ping', help='Check the server answers')
    return p


def handle(cli, args):
    """Handle kbs dispatch."""
    cmd = cli._kbs_cmd
    action = getattr(args, 'action', None) or 'list'
    scope = "user" if getattr(args, 'user', False) else "project"
    if action == 'list':
        cmd.list(args.server)
    elif action == 'info':
        cmd.info(args.slug, args.server)
    elif action == 'create':
        cmd.create(args.slug, args.name, description=args.description,
                   visibility=args.visibility, server_name=args.server)
    elif action == 'delete':
        cmd.delete(args.slug, force=args.force, server_name=args.server)
    elif action == 'use':
        cmd.use(args.slug, name=args.name, write=args.write, server_name=args.server, scope=scope)
    elif action == 'forget':
        cmd.forget(args.name, scope=scope)
    else:
        cmd.ping(args.server)
