from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

from tracklog.auth import hash_password
from tracklog.config import load_settings, resolve_data_dir
from tracklog.db import ROLE_ADMIN, ROLE_USER, TracklogDB
from tracklog.entries import EntryMaterializer
from tracklog.errors import TracklogError
from tracklog.markers import MarkerStore
from tracklog.ticker import ElapsedTicker
from tracklog.timer import TimerSession, TimerSnapshot


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tracklog")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--data-dir", type=Path, default=None, help="Overrides TRACKLOG_DATA_DIR")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the JSON API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8010)
    serve.add_argument("--reload", action="store_true")

    pw = sub.add_parser("set-password", help="Update the password of an existing user")
    pw.add_argument("--username", default="admin")

    add = sub.add_parser("add-user", help="Create a user")
    add.add_argument("--username", required=True)
    add.add_argument("--role", choices=[ROLE_USER, ROLE_ADMIN], default=ROLE_USER)

    status = sub.add_parser("status", help="Show a user's running timer")
    status.add_argument("--username", required=True)
    status.add_argument("--follow", action="store_true", help="Keep updating until the timer stops")

    return parser


def _prompt_password() -> str | None:
    first = getpass.getpass("New password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        print("Passwords do not match.")
        return None
    if len(first) < 8:
        print("Password must be at least 8 characters.")
        return None
    return first


def _set_password(db: TracklogDB, *, username: str) -> int:
    user = str(username or "admin").strip() or "admin"
    if db.get_user_by_name(user) is None:
        print(f"User not found: {user}")
        return 1
    password = _prompt_password()
    if password is None:
        return 1
    if not db.set_user_password(username=user, new_password=password):
        print("Failed to update password.")
        return 1
    print(f"Password updated for '{user}'.")
    return 0


def _add_user(db: TracklogDB, *, username: str, role: str) -> int:
    user = str(username or "").strip()
    if not user:
        print("Username is required.")
        return 1
    if db.get_user_by_name(user) is not None:
        print(f"User already exists: {user}")
        return 1
    password = _prompt_password()
    if password is None:
        return 1
    user_id = db.create_user(username=user, password_hash=hash_password(password), role=role)
    print(f"Created {role} '{user}' (id={user_id}).")
    return 0


def _print_snapshot(snapshot: TimerSnapshot, *, inline: bool) -> None:
    if not snapshot.running:
        line = f"{snapshot.state.value}"
    else:
        target = snapshot.target
        stale = "  (possibly stale)" if snapshot.stale_marker_suspected else ""
        line = f"{snapshot.state.value} {target.kind}:{target.id} {snapshot.to_dict()['display']}{stale}"  # type: ignore[union-attr]
    if inline:
        sys.stdout.write("\r" + line)
        sys.stdout.flush()
    else:
        print(line)


def _status(db: TracklogDB, *, username: str, follow: bool, tick_seconds: float, stale_hours: float) -> int:
    user = db.get_user_by_name(str(username).strip())
    if user is None:
        print(f"User not found: {username}")
        return 1

    session = TimerSession(
        user.id,
        markers=MarkerStore(db),
        materializer=EntryMaterializer(db),
        stale_after=timedelta(hours=stale_hours) if stale_hours > 0 else None,
    )
    try:
        snapshot = session.resume()
    except TracklogError as e:
        print(f"Cannot read timer: {e}")
        return 1

    if not follow or not snapshot.running:
        _print_snapshot(snapshot, inline=False)
        return 0

    def on_tick(snap: TimerSnapshot) -> None:
        # Pick up a stop made from another session.
        if snap.running:
            session.resume()
        _print_snapshot(session.current_snapshot(), inline=True)

    ticker = ElapsedTicker(session, on_tick, interval=tick_seconds)
    try:
        asyncio.run(ticker.run(until_idle=True))
    except KeyboardInterrupt:
        pass
    print()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    load_dotenv()

    if args.data_dir is not None:
        os.environ["TRACKLOG_DATA_DIR"] = str(resolve_data_dir(args.data_dir))

    try:
        settings = load_settings()
    except TracklogError as e:
        logging.error("Invalid configuration: %s", e)
        return 1

    if args.command == "serve":
        os.environ["TRACKLOG_DATA_DIR"] = str(settings.data_dir)
        try:
            import uvicorn  # type: ignore
        except ImportError:
            logging.error("uvicorn is not installed. Install dependencies: pip install -e .")
            return 1
        uvicorn.run("tracklog.app:app", host=args.host, port=int(args.port), reload=bool(args.reload))
        return 0

    db = TracklogDB(settings.db_path)
    try:
        if args.command == "set-password":
            return _set_password(db, username=args.username)
        if args.command == "add-user":
            return _add_user(db, username=args.username, role=args.role)
        if args.command == "status":
            return _status(
                db,
                username=args.username,
                follow=bool(args.follow),
                tick_seconds=settings.tick_seconds,
                stale_hours=settings.stale_marker_hours,
            )
    finally:
        db.close()

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
