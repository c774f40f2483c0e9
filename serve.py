"""Syntax Audio — entry point."""
import sys

import uvicorn

from syntaxaudio.config import DB_PATH, WEB_HOST, WEB_PORT
from syntaxaudio.errors import SchemaUpgradeFailed, format_error
from syntaxaudio.logs import setup_logging
from syntaxaudio.preflight import console, run_preflight
from syntaxaudio.web.server import create_app


def main() -> int:
    setup_logging()

    if not run_preflight():
        return 1

    try:
        app = create_app(DB_PATH)
    except SchemaUpgradeFailed as e:
        console.print(f"[red]{format_error('schema_upgrade', str(DB_PATH), None, str(e))}[/red]")
        return 1

    console.print(f"  Serving on [bold]http://{WEB_HOST}:{WEB_PORT}[/bold]\n")
    uvicorn.run(app, host=WEB_HOST, port=WEB_PORT, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
