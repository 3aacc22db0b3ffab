import argparse
import asyncio
import logging
import sys

import aiohttp

from api_client import ApiClient
from auth.errors import ApiError, RequestBlocked, SessionExpired
from auth.session import SessionController
from auth.token_store import TokenStore
from core import AppState, config_path, load_config
from modules.profile import ProfileManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
log = logging.getLogger(__name__)


def build_state(cfg: dict | None = None, token_path: str | None = None) -> AppState:
    """Wire store → client → session → profile into a fresh AppState."""
    cfg = cfg or load_config()
    state = AppState()
    state.server_url = cfg["server_url"]

    token_store = TokenStore(token_path or config_path())
    api_client = ApiClient(
        state.server_url, token_store,
        refresh_wait_timeout=cfg.get("refresh_wait_timeout"),
    )
    state.token_store = token_store
    state.api_client = api_client
    state.session = SessionController(
        api_client, token_store, state.redirect_to_login,
        settle_delay=cfg.get("logout_settle_delay", 0.5),
    )
    state.profile = ProfileManager(state)
    state.is_authenticated = token_store.is_authenticated
    if state.is_authenticated:
        state.screen = "home"
    return state


def _print_incidents(items: list[dict], pagination: dict | None):
    for inc in items:
        state = (inc.get("current_state") or {}).get("name", "?")
        print(f"{inc.get('id')}  [{state}]  P{inc.get('priority', '-')}  {inc.get('title', '')}")
    if pagination:
        print(f"-- page {pagination.get('page')}/{pagination.get('total_pages')} "
              f"({pagination.get('total')} total)")


async def run(state: AppState, args) -> int:
    client = state.api_client
    try:
        if state.token_store.is_authenticated:
            await state.profile.load_cached()
        if args.command == "login":
            user = await state.session.login_with_password(args.email, args.password)
            state.screen = "home"
            print(f"Logged in as {(user or {}).get('username', args.email)}")
        elif args.command == "logout":
            await state.session.logout()
            print("Logged out")
        elif args.command == "me":
            await state.profile.refresh()
            if not state.user_info:
                print("Not logged in")
                return 1
            u = state.user_info
            print(f"{u.get('first_name', '')} {u.get('last_name', '')} <{u.get('email')}>")
        elif args.command == "incidents":
            items, pagination = await client.list_incidents(
                page=args.page, limit=args.limit, current_state_id=args.state,
            )
            _print_incidents(items, pagination)
        elif args.command == "transitions":
            for t in await client.get_available_transitions(args.id):
                tr = t.get("transition", t)
                print(f"{tr.get('id')}  {tr.get('name')}")
        elif args.command == "transition":
            await client.execute_transition(args.id, args.transition_id, args.comment)
            print("Transition executed")
        return 0
    except (RequestBlocked, SessionExpired) as e:
        log.error("%s", e)
        print("Not logged in, run `login` first")
        return 1
    except (ApiError, aiohttp.ClientError) as e:
        log.error("Request failed: %s", e)
        return 1
    finally:
        await client.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Incident desk API client")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login")
    p.add_argument("email")
    p.add_argument("password")
    sub.add_parser("logout")
    sub.add_parser("me")

    p = sub.add_parser("incidents")
    p.add_argument("--state", help="current_state_id filter")
    p.add_argument("--page", type=int, default=1)
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("transitions")
    p.add_argument("id")

    p = sub.add_parser("transition")
    p.add_argument("id")
    p.add_argument("transition_id")
    p.add_argument("--comment")
    return parser.parse_args(argv)


def cli():
    args = parse_args()
    state = build_state()
    sys.exit(asyncio.run(run(state, args)))


if __name__ == "__main__":
    cli()
