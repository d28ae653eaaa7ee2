import argparse
import asyncio
import time
import traceback
from asyncio import CancelledError
from contextlib import AsyncExitStack

from peerdrop.avails import const
from peerdrop.conduit import DownloadsPersister, TqdmProgress
from peerdrop.configurations import configure
from peerdrop.core.endpoint import Endpoint
from peerdrop.managers import logmanager
from peerdrop.managers.statemanager import State, StateManager
from peerdrop.relay.server import run_relay

exit_stack = AsyncExitStack()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog=const.APP_NAME, description="send files through a relay or directly")
    parser.add_argument("--debug", action="store_true", help="verbose logging and tracebacks")
    parser.add_argument("--root", default=None, help="directory holding configs/ and logs/")
    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="run the rendezvous relay")
    relay.add_argument("--host", default=None, help="address to bind, [RELAY] bind_ip by default")
    relay.add_argument("--port", type=int, default=None, help="[RELAY] port by default")

    endpoint = commands.add_parser("endpoint", help="stay online and receive files")
    endpoint.add_argument("username")
    endpoint.add_argument("--relay", dest="relay_uri", default=None, help="ws://host:port of the relay")
    endpoint.add_argument("--downloads", default=None, help="where received files go")

    return parser.parse_args(argv)


async def run_endpoint(args):
    const.USERNAME = args.username
    persister = DownloadsPersister(args.downloads or const.PATH_DOWNLOAD)
    async with Endpoint(args.username, args.relay_uri, persister=persister, progress=TqdmProgress()) as endpoint:
        await endpoint.serve_forever()


def initial_states(args):
    set_paths = State("set paths", configure.set_paths, args.root)
    log_config = State("initiating logging", logmanager.initiate, exit_stack)
    load_config = State("loading configurations", configure.load_configs)
    print_config = State("printing configurations", configure.print_constants)
    if args.command == "relay":
        serve = State("serving relay", run_relay, args.host, args.port, is_blocking=True)
    else:
        serve = State("endpoint online", run_endpoint, args, is_blocking=True)

    return set_paths, log_config, load_config, print_config, serve, None


def initiate(states):
    cancellation_started = 0.0

    async def _async_initiate():
        state_manager = StateManager()
        await state_manager.put_states(states)

        cancelled = None
        async with exit_stack:
            try:
                await state_manager.process_states()
                await state_manager.wait_tasks()
            except CancelledError as ce:
                cancelled = ce
                state_manager.signal_stopping()
                nonlocal cancellation_started
                cancellation_started = time.perf_counter()

        if cancelled:
            raise cancelled

    try:
        with asyncio.Runner(debug=const.debug) as runner:
            runner.run(_async_initiate())
    except KeyboardInterrupt:
        if const.debug:
            traceback.print_exc()
            print(f"clean exit completed within {time.perf_counter() - cancellation_started:.6f}s")
        exit(0)


def main(argv=None):
    args = parse_args(argv)
    const.debug = args.debug
    initiate(initial_states(args))


if __name__ == "__main__":
    main()
