"""CLI interface for Coach Stream."""

import importlib

import click

# Map command names to their module:attribute for lazy import
_COMMANDS = {
    "chat": "coach_stream.cli.chat:chat",
    "thread": "coach_stream.cli.threads:thread",
}


class LazyGroup(click.Group):
    """
    Lazy loading of CLI commands to avoid hard dependencies at top level.

    This allows us to split up Click commands into separate files
    without having to import all dependencies at the top level.
    """

    def list_commands(self, ctx):
        # Keep stable ordering for help output
        return list(_COMMANDS.keys())

    def get_command(self, ctx, name):
        target = _COMMANDS.get(name)
        if not target:
            return None
        module_path, attr = target.split(":", 1)
        mod = importlib.import_module(module_path)
        return getattr(mod, attr)


@click.command(cls=LazyGroup)
@click.option("--log-level", default=None, help="Logging level (defaults to settings)")
def main(log_level):
    """Coach Stream CLI."""
    from coach_stream.cli.logging_utils import configure_logging

    configure_logging(log_level)


if __name__ == "__main__":
    main()
