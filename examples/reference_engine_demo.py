"""Drive the bundled reference engine through a short browsing session."""

import argparse
import logging
import pathlib
import sys
import threading

REPO_ROOT: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    :param argv: Optional argument list.
    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(description="Open a page on the reference engine and navigate it.")
    parser.add_argument("urls", nargs="*", default=["https://example.com/", "https://example.com/missing"])
    parser.add_argument("--browser", choices=["chromium", "firefox", "webkit"], default="chromium")
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-call deadline in seconds.")
    parser.add_argument("--verbose", action="store_true", help="Log channel activity to stderr.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the demo.

    :param argv: Optional argument list.
    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args(argv)
    _ensure_src_path(str(REPO_ROOT / "src"))
    if args.verbose is True:
        logging.basicConfig(level=logging.DEBUG, format="%(threadName)s %(name)s: %(message)s")

    from conduit import Dialog
    from conduit import RemoteCallError
    from conduit import Response
    from conduit import launch_reference_engine

    with launch_reference_engine(default_timeout=float(args.timeout)) as channel:
        playwright = channel.initialize()
        browser = playwright.browser_type(str(args.browser)).launch(headless=True)
        print(f"launched {args.browser} {browser.version} as {browser.handle}")
        context = browser.new_context()
        page = context.new_page()

        def on_response(payload: dict[str, object]) -> None:
            response: object = payload.get("response")
            if isinstance(response, Response) is True:
                print(f"  <- {response.status} {response.url}")

        page.on("response", on_response)

        exit_code: int = 0
        for url in args.urls:
            print(f"goto {url}")
            try:
                response: Response | None = page.goto(str(url))
            except RemoteCallError as exc:
                print(f"  navigation failed: {exc.remote_message}")
                exit_code = 1
                continue
            status: object = None if response is None else response.status
            print(f"  title={page.title()!r} status={status} url={page.url}")

        dialog_handled: threading.Event = threading.Event()

        def on_dialog(payload: dict[str, object]) -> None:
            dialog: object = payload.get("dialog")
            if isinstance(dialog, Dialog) is True:
                print(f"dialog: {dialog.message!r}; accepting")
                dialog.accept()
            dialog_handled.set()

        page.on("dialog", on_dialog)
        page.invoke("triggerDialog", {"message": "Leave this page?"})
        dialog_handled.wait(float(args.timeout))

        closed: threading.Event = threading.Event()
        page.on("close", lambda payload: closed.set())
        browser.close()
        closed.wait(float(args.timeout))
        print(f"browser closed; page disposed={page.is_disposed}; live objects={len(channel.registry)}")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
