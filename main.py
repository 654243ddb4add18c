import argparse
import asyncio
import logging
import sys
from typing import List

from dbisolation.anomaly import registry
from dbisolation.levels import Backend, IsolationLevel
from dbisolation.provision import truncate
from dbisolation.records import Record, format_table
from dbisolation.session import Database
from dbisolation.store import Store


def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser()

    ap.add_argument(
        "--backend",
        "-b",
        type=str,
        required=True,
        choices=[backend.value for backend in Backend]
    )

    ap.add_argument(
        "--anomaly",
        "-a",
        type=str,
        required=True,
        choices=registry.get_registered()
    )

    ap.add_argument(
        "--isolation-level",
        "-l",
        type=str,
        default=None,
        choices=[level.value for level in IsolationLevel],
        help="defaults to the level the anomaly is usually shown with"
    )

    ap.add_argument(
        "--no-deadlock-breaker",
        action="store_true",
        help="never kill blocked sessions, even on lock based backends"
    )

    ap.add_argument("--verbose", "-v", action="store_true")

    return ap.parse_args(argv)


class _StepPrinter:

    def __init__(self):
        self._count = 0

    def __call__(self, party: str, text: str, records: List[Record] | None = None) -> None:
        self._count += 1
        print(f"[{self._count:0>2}:T{1 if party == 'A' else 2}]: {text}")
        if records is not None:
            print(format_table(records), "\n")


async def main(args: argparse.Namespace):
    backend = Backend(args.backend)
    database = Database.from_env(backend)
    runner, description = registry.resolve(args.anomaly)

    kwargs = {"database": database, "trace": _StepPrinter()}
    if args.isolation_level:
        kwargs["level"] = IsolationLevel(args.isolation_level)
    if args.no_deadlock_breaker:
        kwargs["deadlock_breaker"] = False

    if description:
        print(args.anomaly, ":", args.backend, ":", args.isolation_level or "scenario default")
        print(description)
        print()

    await truncate(database)
    try:
        result = await runner(backend, **kwargs)
        print("RESULT:", result)
        print()
    finally:
        await _print_table(database, "AFTER")
        await truncate(database)


async def _print_table(database: Database, tag: str):
    async with Store(database) as store:
        print("DB STATE:", tag)
        print(format_table(await store.snapshot()))
        print()


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        asyncio.run(main(args))
        sys.exit(0)
    except Exception as exc:
        print(f"{type(exc).__name__}: {exc}")
        sys.exit(1)
