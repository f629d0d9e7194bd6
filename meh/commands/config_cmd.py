"""
ConfigCommand — View or set configuration

    meh config                              merged configuration
    meh config --get search.default_limit   one value
    meh config --set search.token_budget=2000 [--user]
"""

from ..commands.base import BaseCommand


COMMAND_NAME = 'config'


class ConfigCommand(BaseCommand):

    def show_config(self):
        self.emit(self.config_manager.load().to_dict(), [self.config_manager.display()])

    def get_config(self, key: str):
        value = self.config_manager.get(key)
        if value is None:
            raise ValueError(f"Unknown config key: {key}")
        self.emit({key: value}, [value])
        return value

    def set_config(self, key: str, value: str, scope: str = "project"):
        """
        Raises:
            ValueError: unknown key or invalid value (nothing is saved)
        """
        error = self.config_manager.set(key, value, scope)
        if error:
            raise ValueError(error)
        saved_to = (self.config_manager.project_config_path if scope == "project"
                    else self.config_manager.user_config_path)
        self.emit({"key": key, "value": value, "saved_to": str(saved_to)},
                  [f"Set {key} = {value}", f"  saved to {saved_to}"])


def register_parser(subparsers):
    """Register config parser."""
    p = subparsers.add_parser('config', help='View or set configuration')
    p.add_argument('--get', metavar='KEY', help='Show one value (e.g., kbs.primary)')
    p.add_argument('--set', metavar='KEY=VALUE',
                   help='Set config value (e.g., search.default_limit=10)')
    p.add_argument('--user', action='store_true',
                   help='Apply to user config instead of project')
    return p


def handle(cli, args):
    """Handle config dispatch."""
    if args.set:
        if '=' not in args.set:
            raise ValueError("Use format KEY=VALUE (e.g., search.default_limit=10)")
        key, value = args.set.split('=', 1)
        cli._config_cmd.set_config(key, value, "user" if args.user else "project")
    elif args.get:
        cli._config_cmd.get_config(args.get)
    else:
        cli._config_cmd.show_config()
