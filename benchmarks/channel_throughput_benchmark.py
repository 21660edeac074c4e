"""Measure call, event and object-lifecycle throughput against the reference engine."""

import argparse
import json
import pathlib
import statistics
import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

REPO_ROOT: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
CALL_TIMEOUT_SECONDS: float = 30.0
CaseRunner = Callable[[object, int], dict[str, object]]

_CASE_ORDER: list[str] = [
    "sequential_echo",
    "concurrent_echo",
    "event_burst",
    "page_churn",
]

_CASE_DESCRIPTIONS: dict[str, str] = {
    "sequential_echo": "One caller, one round trip at a time.",
    "concurrent_echo": "Eight callers sharing the channel.",
    "event_burst": "Engine-emitted events delivered to one listener.",
    "page_churn": "Create and close a page, exercising create and dispose events.",
}

_CASE_DEFAULT_ITERATIONS: dict[str, int] = {
    "sequential_echo": 5_000,
    "concurrent_echo": 10_000,
    "event_burst": 20_000,
    "page_churn": 500,
}

_CASE_QUICK_ITERATIONS: dict[str, int] = {
    "sequential_echo": 500,
    "concurrent_echo": 1_000,
    "event_burst": 2_000,
    "page_churn": 50,
}


def _ensure_repo_paths() -> None:
    """Ensure repository-local imports are resolvable for this process."""
    src_path: str = str(REPO_ROOT / "src")
    has_src_path: bool = src_path in sys.path
    if has_src_path is False:
        sys.path.insert(0, src_path)


def _run_case_sequential_echo(page: object, iterations: int) -> dict[str, object]:
    """Run back-to-back echo calls from one thread.

    :param page: Page proxy.
    :param iterations: Number of calls.
    :returns: Summary payload.
    """
    invoke: Callable[..., dict[str, object]] = getattr(page, "invoke")
    checksum: int = 0
    for index in range(iterations):
        result: dict[str, object] = invoke("echo", {"n": index}, CALL_TIMEOUT_SECONDS)
        params: object = result.get("params")
        if isinstance(params, dict) is False or params.get("n") != index:
            raise ValueError(f"echo returned unexpected payload: {result!r}")
        checksum ^= index
    return {"xor": checksum}


def _run_case_concurrent_echo(page: object, iterations: int) -> dict[str, object]:
    """Run echo calls from a pool of caller threads.

    :param page: Page proxy.
    :param iterations: Total number of calls.
    :returns: Summary payload.
    """
    invoke: Callable[..., dict[str, object]] = getattr(page, "invoke")
    worker_count: int = 8

    def one_call(index: int) -> int:
        result: dict[str, object] = invoke("echo", {"n": index}, CALL_TIMEOUT_SECONDS)
        params: object = result.get("params")
        if isinstance(params, dict) is False or params.get("n") != index:
            raise ValueError(f"echo returned unexpected payload: {result!r}")
        return index

    checksum: int = 0
    with ThreadPoolExecutor(max_workers=worker_count) as executor:
        for value in executor.map(one_call, range(iterations)):
            checksum ^= value
    return {"xor": checksum, "workers": worker_count}


def _run_case_event_burst(page: object, iterations: int) -> dict[str, object]:
    """Ask the engine for a burst of events and wait until all are delivered.

    :param page: Page proxy.
    :param iterations: Number of events.
    :returns: Summary payload.
    """
    received: list[int] = [0]
    done: threading.Event = threading.Event()

    def on_tick(payload: dict[str, object]) -> None:
        received[0] += 1
        if received[0] == iterations:
            done.set()

    on_method: Callable[..., None] = getattr(page, "on")
    off_method: Callable[..., bool] = getattr(page, "off")
    invoke: Callable[..., dict[str, object]] = getattr(page, "invoke")
    on_method("tick", on_tick)
    try:
        invoke("emit", {"event": "tick", "count": iterations}, CALL_TIMEOUT_SECONDS)
        completed: bool = done.wait(CALL_TIMEOUT_SECONDS)
        if completed is False:
            raise TimeoutError(f"Only {received[0]} of {iterations} events arrived")
    finally:
        off_method("tick", on_tick)
    return {"events": received[0]}


def _run_case_page_churn(page: object, iterations: int) -> dict[str, object]:
    """Open and close pages in the page's context.

    :param page: Page proxy whose parent context hosts the new pages.
    :param iterations: Number of pages.
    :returns: Summary payload.
    """
    context: object = getattr(page, "parent")
    new_page: Callable[..., object] = getattr(context, "new_page")
    closed: int = 0
    for _ in range(iterations):
        created: object = new_page(CALL_TIMEOUT_SECONDS)
        getattr(created, "close")(CALL_TIMEOUT_SECONDS)
        is_disposed: bool = getattr(created, "is_disposed")
        if is_disposed is False:
            raise ValueError("closed page was not disposed")
        closed += 1
    return {"closed": closed}


_CASE_RUNNERS: dict[str, CaseRunner] = {
    "sequential_echo": _run_case_sequential_echo,
    "concurrent_echo": _run_case_concurrent_echo,
    "event_burst": _run_case_event_burst,
    "page_churn": _run_case_page_churn,
}


def _build_case_list(cases_arg: str | None) -> list[str]:
    """Build the ordered case list from user input.

    :param cases_arg: Optional comma-separated case names.
    :returns: Ordered case names.
    :raises ValueError: If unknown case names are requested.
    """
    if cases_arg is None:
        return list(_CASE_ORDER)

    requested: list[str] = []
    for raw_part in cases_arg.split(","):
        candidate: str = raw_part.strip()
        if len(candidate) == 0:
            continue
        known_case: bool = candidate in _CASE_RUNNERS
        if known_case is False:
            raise ValueError(f"Unknown case: {candidate}")
        already_seen: bool = candidate in requested
        if already_seen is False:
            requested.append(candidate)
    if len(requested) == 0:
        raise ValueError("No benchmark cases selected")
    return requested


def _run_case(case_name: str, iterations: int, event_dispatch: str) -> dict[str, object]:
    """Run one case against a fresh engine process.

    :param case_name: Case to run.
    :param iterations: Timed iterations.
    :param event_dispatch: Listener delivery mode for the channel.
    :returns: Timing payload.
    """
    from conduit import launch_reference_engine

    channel = launch_reference_engine(default_timeout=CALL_TIMEOUT_SECONDS, event_dispatch=event_dispatch)
    try:
        playwright = channel.initialize()
        browser = playwright.chromium.launch()
        context = browser.new_context()
        page = context.new_page()
        runner: CaseRunner = _CASE_RUNNERS[case_name]
        start_time: float = time.perf_counter()
        summary: dict[str, object] = runner(page, iterations)
        elapsed_seconds: float = time.perf_counter() - start_time
    finally:
        channel.close()
    return {
        "case_name": case_name,
        "iterations": iterations,
        "elapsed_seconds": elapsed_seconds,
        "summary": summary,
    }


def _render_table(case_names: list[str], iteration_map: dict[str, int], stats: dict[str, dict[str, float]]) -> str:
    """Render a summary table of benchmark results.

    :param case_names: Ordered case names.
    :param iteration_map: Iteration counts by case.
    :param stats: Aggregated stats by case.
    :returns: Rendered table text.
    """
    header: str = "Case                  Iter   Median(ms)      Min(ms)     us/op     ops/s"
    lines: list[str] = [header, "-" * len(header)]
    for case_name in case_names:
        iterations: int = iteration_map[case_name]
        median_ms: float = stats[case_name]["median_seconds"] * 1_000.0
        min_ms: float = stats[case_name]["min_seconds"] * 1_000.0
        us_per_op: float = stats[case_name]["median_us_per_op"]
        ops_per_second: float = 0.0
        if us_per_op > 0.0:
            ops_per_second = 1_000_000.0 / us_per_op
        lines.append(
            f"{case_name:20} {iterations:6d} {median_ms:12.3f} {min_ms:12.3f} "
            + f"{us_per_op:9.2f} {ops_per_second:9.0f}"
        )
    return "\n".join(lines)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    :param argv: Optional argument list.
    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(description="Benchmark conduit channels against the reference engine.")
    parser.add_argument("--cases", default=None, help=f"Comma-separated subset of: {', '.join(_CASE_ORDER)}")
    parser.add_argument("--repetitions", type=int, default=3, help="Runs per case; the median is reported.")
    parser.add_argument("--quick", action="store_true", help="Use small iteration counts.")
    parser.add_argument(
        "--event-dispatch",
        choices=["thread", "inline"],
        default="thread",
        help="Listener delivery mode for the channel.",
    )
    parser.add_argument("--json-output", default=None, help="Optional path for raw results as JSON.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the benchmark.

    :param argv: Optional argument list.
    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args(argv)
    _ensure_repo_paths()
    repetitions: int = int(args.repetitions)
    if repetitions < 1:
        raise ValueError("repetitions must be >= 1")
    quick: bool = bool(args.quick)
    selected_cases: list[str] = _build_case_list(args.cases)

    iteration_map: dict[str, int] = {}
    stats: dict[str, dict[str, float]] = {}
    raw_results: dict[str, list[dict[str, object]]] = {}
    for case_name in selected_cases:
        iterations: int = _CASE_DEFAULT_ITERATIONS[case_name]
        if quick is True:
            iterations = _CASE_QUICK_ITERATIONS[case_name]
        iteration_map[case_name] = iterations
        print(f"[{case_name}] {_CASE_DESCRIPTIONS[case_name]}", file=sys.stderr)

        timings: list[float] = []
        raw_results[case_name] = []
        for _ in range(repetitions):
            payload: dict[str, object] = _run_case(case_name, iterations, str(args.event_dispatch))
            raw_results[case_name].append(payload)
            elapsed_obj: object = payload["elapsed_seconds"]
            if isinstance(elapsed_obj, float) is False:
                raise TypeError("elapsed_seconds must be float")
            timings.append(elapsed_obj)

        median_seconds: float = statistics.median(timings)
        stats[case_name] = {
            "median_seconds": median_seconds,
            "min_seconds": min(timings),
            "max_seconds": max(timings),
            "median_us_per_op": (median_seconds / iterations) * 1_000_000.0,
        }

    print(_render_table(selected_cases, iteration_map, stats))
    if args.json_output is not None:
        output_path: pathlib.Path = pathlib.Path(str(args.json_output))
        output_path.write_text(
            json.dumps({"stats": stats, "runs": raw_results}, indent=2, sort_keys=True),
            encoding="utf-8",
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
