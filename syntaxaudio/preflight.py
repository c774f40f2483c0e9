"""Startup preflight check"""
import shutil
import socket

from rich.console import Console

from .config import APP_VERSION, DATA_DIR, DB_PATH, WEB_HOST, WEB_PORT
from .db import Database
from .errors import StorageUnavailable

console = Console()

MIN_FREE_MB = 50


def run_preflight() -> bool:
    """
    Run all startup checks. Print results. Return True only if ALL pass.
    """
    console.print(f"\n  [bold]♪  Syntax Audio v{APP_VERSION}[/bold] — preflight check\n")

    checks = [
        ("Python deps", check_python_deps),
        ("Database", check_database),
        ("Disk space", check_disk),
        ("Web port", check_port),
    ]

    results = []
    for i, (label, fn) in enumerate(checks, 1):
        ok, msg, fix = fn()
        results.append((ok, label, msg, fix))
        icon = "[green]✓[/green]" if ok else "[red]✗[/red]"
        dots = "." * max(30 - len(label), 3)
        status = f"[green]{msg}[/green]" if ok else f"[red]{msg}[/red]"
        console.print(f"  [{i}/{len(checks)}] {label} {dots} {icon} {status}")

    # Print fix instructions for any failures
    failures = [(label, fix) for ok, label, _, fix in results if not ok and fix]
    if failures:
        console.print("")
        for label, fix in failures:
            console.print(f"  [yellow]Fix for {label}:[/yellow]")
            for line in fix.strip().splitlines():
                console.print(f"    {line}")
            console.print("")
        return False

    console.print("")
    return True


def check_python_deps() -> tuple[bool, str, str]:
    missing = []
    versions = []
    for module in ("starlette", "httpx", "uvicorn", "dotenv"):
        try:
            mod = __import__(module)
        except ImportError:
            missing.append(module)
            continue
        version = getattr(mod, "__version__", None)
        if version:
            versions.append(f"{module} {version}")

    if missing:
        return False, f"missing: {', '.join(missing)}", "pip install -e ."
    return True, ", ".join(versions) or "ok", ""


def check_database(path=None) -> tuple[bool, str, str]:
    path = path or DB_PATH
    try:
        version = Database(path).version()
    except StorageUnavailable as e:
        return False, str(e), f"Check that {path} is writable, or set DB_PATH in .env"
    return True, f"schema v{version}", ""


def check_disk(path=None) -> tuple[bool, str, str]:
    path = path or DATA_DIR
    try:
        path.mkdir(parents=True, exist_ok=True)
        free_mb = shutil.disk_usage(path).free / (1024 * 1024)
    except OSError as e:
        return False, str(e), f"Make sure {path} exists and is writable"
    if free_mb < MIN_FREE_MB:
        return False, f"only {free_mb:.0f}MB free", f"Free up space under {path}"
    return True, f"{free_mb:.0f}MB free", ""


def check_port(host: str = WEB_HOST, port: int = WEB_PORT) -> tuple[bool, str, str]:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            return False, f"{host}:{port} unavailable ({e.strerror})", "Set WEB_PORT in .env to a free port"
    return True, f"{host}:{port}", ""
