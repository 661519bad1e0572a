"""
manage.py — operator commands for a TreeShare install.

Usage:
  python manage.py init-db
  python manage.py create-user alice --admin
  python manage.py set-password alice
  python manage.py disable-user alice [--enable]
  python manage.py delete-user alice
  python manage.py list-users
  python manage.py create-link docs --mode browse --expiry 24h
  python manage.py list-links
  python manage.py revoke-link <token>
  python manage.py purge-sessions
  python manage.py verify-audit
  python manage.py serve

Passwords are prompted for when --password is not given.
"""

import argparse
import getpass
import sys

from config import CONFIG
from database import SessionLocal, init_db


def _password(args) -> str:
    if args.password:
        return args.password
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("passwords do not match")
    return first


def cmd_init_db(db, args):
    from app_settings import apply_startup_overrides, ensure_default_settings

    ensure_default_settings(db)
    apply_startup_overrides(db)
    print(f"Database ready at {CONFIG.database_url}")


def cmd_create_user(db, args):
    import users

    role = users.ROLE_ADMIN if args.admin else users.ROLE_USER
    user = users.create_user(db, args.username, _password(args), role)
    print(f"Created {user.role} '{user.username}' (id {user.id})")


def cmd_set_password(db, args):
    import users

    user = users.set_password(db, args.username, _password(args))
    print(f"Password updated for '{user.username}'")


def cmd_disable_user(db, args):
    import users

    user = users.set_disabled(db, args.username, not args.enable)
    print(f"'{user.username}' is now {'disabled' if user.disabled else 'enabled'}")


def cmd_delete_user(db, args):
    import users

    users.delete_user(db, args.username)
    print(f"Deleted '{users.normalize_username(args.username)}'")


def cmd_list_users(db, args):
    import users

    for u in users.list_users(db):
        state = "disabled" if u.disabled else "active"
        print(f"  {u.id:>4}  {u.username:<24} {u.role:<6} {state}")


def cmd_create_link(db, args):
    import shares
    from app_settings import get_app_settings
    from sandbox import safe_join

    safe_join(CONFIG.root_dir, args.path)
    expiry = args.expiry or get_app_settings(db).default_share_expiry
    try:
        expires_in = shares.parse_duration(expiry)
    except ValueError as e:
        raise SystemExit(str(e))
    link = shares.create_link(db, args.path, args.mode, expires_in)
    print(f"{CONFIG.route('/s/' + link.token)}  ({link.mode}, expires {link.expires_at.isoformat()} UTC)")


def cmd_list_links(db, args):
    import shares

    for link in shares.list_links(db):
        d = shares.link_to_dict(link)
        state = "revoked" if d["revoked"] else ("live" if shares.is_live(link) else "expired")
        print(f"  {d['token']}  {d['mode']:<8} {state:<7} /{d['path']}  expires {d['expires_at']}")


def cmd_revoke_link(db, args):
    import shares
    from auth import UNSAFE_ADMIN
    from permissions import Permissions

    # the local operator acts with admin capability
    shares.revoke_link(db, args.token, UNSAFE_ADMIN, Permissions(admin=True))
    print(f"Revoked {args.token}")


def cmd_purge_sessions(db, args):
    import sessions

    removed = sessions.purge_expired(db)
    print(f"Removed {removed} expired sessions")


def cmd_verify_audit(db, args):
    from audit import verify_audit_chain

    result = verify_audit_chain(db)
    print(f"{result['message']} ({result['entries_checked']} entries)")
    return 0 if result["valid"] else 1


def cmd_serve(db, args):
    import uvicorn

    uvicorn.run(
        "main:app",
        host=CONFIG.bind,
        port=CONFIG.port,
        ssl_certfile=CONFIG.cert_file or None,
        ssl_keyfile=CONFIG.key_file or None,
        proxy_headers=CONFIG.trust_proxy,
        timeout_keep_alive=60,
        timeout_graceful_shutdown=5,
        log_level=CONFIG.log_level.lower(),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="manage.py", description="TreeShare operator commands")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables and seed settings").set_defaults(func=cmd_init_db)

    p = sub.add_parser("create-user", help="create a user")
    p.add_argument("username")
    p.add_argument("--password")
    p.add_argument("--admin", action="store_true")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("set-password", help="set a user's password")
    p.add_argument("username")
    p.add_argument("--password")
    p.set_defaults(func=cmd_set_password)

    p = sub.add_parser("disable-user", help="disable (or --enable) a user")
    p.add_argument("username")
    p.add_argument("--enable", action="store_true")
    p.set_defaults(func=cmd_disable_user)

    p = sub.add_parser("delete-user", help="delete a user")
    p.add_argument("username")
    p.set_defaults(func=cmd_delete_user)

    sub.add_parser("list-users", help="list users").set_defaults(func=cmd_list_users)

    p = sub.add_parser("create-link", help="create a share link")
    p.add_argument("path", nargs="?", default="")
    p.add_argument("--mode", default="browse", choices=["browse", "download", "upload"])
    p.add_argument("--expiry", help='duration such as "24h" or "7d"')
    p.set_defaults(func=cmd_create_link)

    sub.add_parser("list-links", help="list share links").set_defaults(func=cmd_list_links)

    p = sub.add_parser("revoke-link", help="revoke a share link")
    p.add_argument("token")
    p.set_defaults(func=cmd_revoke_link)

    sub.add_parser("purge-sessions", help="delete expired sessions").set_defaults(func=cmd_purge_sessions)
    sub.add_parser("verify-audit", help="check the audit hash chain").set_defaults(func=cmd_verify_audit)
    sub.add_parser("serve", help="run the HTTP server").set_defaults(func=cmd_serve)
    return parser


def main(argv=None) -> int:
    from errors import TreeShareError

    args = build_parser().parse_args(argv)
    init_db()
    db = SessionLocal()
    try:
        return args.func(db, args) or 0
    except TreeShareError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
