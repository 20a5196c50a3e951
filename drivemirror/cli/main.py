from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from drivemirror.core.config import (
    DEFAULT_CONFIG_PATH,
    RUNTIME_DIR,
    clamp_page_limit,
    load_config,
    save_config,
)
from drivemirror.core.logging_setup import engine_log_func, setup_logging
from drivemirror.providers.gdrive import DriveClient, SyncEngine, TreeStore
from drivemirror.providers.gdrive.db import init_db
from drivemirror.providers.gdrive.tree import assemble_tree

app = typer.Typer(add_completion=False)
console = Console()


def _build_sync_engine() -> tuple:
    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)
    init_db(cfg.database.path)
    store = TreeStore(cfg.database.path)

    client = DriveClient(
        access_token=cfg.auth.access_token,
        token_file=cfg.auth.token_file,
        client_id=cfg.auth.client_id,
        client_secret=cfg.auth.client_secret,
        timeout=int(cfg.auth.timeout_sec),
    )
    engine = SyncEngine(cfg.model_dump(), store, client, engine_log_func)
    return cfg, store, engine


def _dump(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _subscription_or_exit(store: TreeStore, sync_id: str) -> dict:
    sub = store.get_subscription(sync_id)
    if not sub:
        _dump({"ok": False, "error": "sync_not_found", "sync_id": sync_id})
        raise typer.Exit(2)
    return sub


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _dump(cfg.model_dump())


@app.command("config-set-auth")
def config_set_auth(
    token_file: str = typer.Option(
        str(RUNTIME_DIR / "google_tokens.json"),
        "--token-file",
        help="JSON file with access_token/refresh_token.",
    ),
    client_id: str = typer.Option("", "--client-id", help="OAuth client id, needed for refresh."),
    client_secret: str = typer.Option("", "--client-secret", help="OAuth client secret, needed for refresh."),
):
    """Point the service at Google OAuth tokens."""
    cfg = load_config()
    cfg.auth.token_file = token_file
    cfg.auth.client_id = client_id
    cfg.auth.client_secret = client_secret
    save_config(cfg)
    _dump(
        {
            "ok": True,
            "token_file": cfg.auth.token_file,
            "client_id_set": bool(cfg.auth.client_id),
            "client_secret_set": bool(cfg.auth.client_secret),
        }
    )


@app.command()
def status():
    """Show runtime summary."""
    cfg = load_config()
    token_path = Path(cfg.auth.token_file).expanduser() if cfg.auth.token_file else None
    init_db(cfg.database.path)
    store = TreeStore(cfg.database.path)

    table = Table(title="drivemirror status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("static_token", "set" if cfg.auth.access_token else "(unset)")
    table.add_row("token_file", str(token_path) if token_path else "(unset)")
    table.add_row("token_file_exists", "yes" if token_path and token_path.exists() else "no")
    table.add_row("subscriptions", str(len(store.list_subscriptions())))
    poll_interval = int(cfg.sync.poll_interval_sec or 0)
    table.add_row("auto_poll", "on" if poll_interval > 0 else "off")
    table.add_row("page_limit", str(cfg.sync.page_limit))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command()
def subscribe(
    folder_id: str = typer.Argument(..., help="Drive folder id to mirror."),
    user_id: str = typer.Option("local", "--user", help="Owning user id."),
    name: str = typer.Option("", "--name", help="Display name; fetched from Drive when omitted."),
    crawl: bool = typer.Option(True, "--crawl/--no-crawl", help="Run the initial crawl right away."),
):
    """Link a Drive folder and optionally crawl it."""
    _cfg, store, engine = _build_sync_engine()
    folder_name = name or engine.client.get_file_meta(folder_id, fields="id,name").get("name") or folder_id
    sub = store.create_subscription(user_id, folder_id, folder_name)
    out: dict = {"ok": True, "subscription": sub}
    if crawl:
        out["crawl"] = engine.crawl(sub["id"], folder_id)
    _dump(out)


@app.command()
def subscriptions(user_id: str | None = typer.Option(None, "--user", help="Only this user's subscriptions.")):
    """List subscriptions with node counts."""
    cfg = load_config()
    init_db(cfg.database.path)
    store = TreeStore(cfg.database.path)

    table = Table(title="subscriptions")
    for col in ("id", "user", "folder", "name", "nodes", "cursor"):
        table.add_column(col)
    for sub in store.list_subscriptions(user_id):
        cursor = store.get_cursor_row(sub["id"])
        table.add_row(
            sub["id"],
            sub["user_id"],
            sub["drive_folder_id"],
            sub["drive_folder_name"] or "",
            str(store.count_nodes(sub["id"])),
            cursor["updated_at"] if cursor else "-",
        )
    console.print(table)


@app.command()
def unsubscribe(sync_id: str = typer.Argument(...)):
    """Remove a subscription together with its mirrored rows and cursor."""
    cfg = load_config()
    init_db(cfg.database.path)
    removed = TreeStore(cfg.database.path).delete_subscription(sync_id)
    _dump({"ok": removed, "sync_id": sync_id})
    if not removed:
        raise typer.Exit(2)


@app.command()
def crawl(sync_id: str = typer.Argument(...)):
    """Run the initial crawl for a subscription."""
    _cfg, store, engine = _build_sync_engine()
    sub = _subscription_or_exit(store, sync_id)
    try:
        result = engine.crawl(sync_id, sub["drive_folder_id"])
    except Exception as e:
        _dump({"ok": False, "sync_id": sync_id, "error": str(e)})
        raise typer.Exit(2)
    _dump({"ok": True, **result})


@app.command()
def poll(
    sync_id: str | None = typer.Argument(None, help="Subscription to poll; all when omitted."),
    page_limit: int | None = typer.Option(None, "--pages", help="Change pages per subscription (1-10)."),
):
    """Apply pending Drive changes."""
    cfg, store, engine = _build_sync_engine()
    limit = clamp_page_limit(page_limit, default=cfg.sync.page_limit)
    subs = [_subscription_or_exit(store, sync_id)] if sync_id else store.list_subscriptions()

    results = []
    failed = False
    for sub in subs:
        try:
            results.append(engine.poll(sub, limit))
        except Exception as e:
            failed = True
            results.append({"sync_id": sub["id"], "error": str(e)})
    _dump({"ok": not failed, "results": results})
    if failed:
        raise typer.Exit(2)


@app.command()
def tree(
    sync_id: str = typer.Argument(...),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Print the mirrored tree of a subscription."""
    cfg = load_config()
    init_db(cfg.database.path)
    store = TreeStore(cfg.database.path)
    root = assemble_tree(store, _subscription_or_exit(store, sync_id))
    if json_output:
        _dump(root)
        return

    def add(branch: Tree, node: dict) -> None:
        for child in node.get("children", []):
            label = f"{child.get('name')}/" if child["type"] == "folder" else str(child.get("name"))
            add(branch.add(label), child)

    view = Tree(f"{root.get('name')}/")
    add(view, root)
    console.print(view)


@app.command()
def serve():
    """Run the HTTP API."""
    from drivemirror.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
