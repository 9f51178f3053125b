import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from koi import __version__
from koi.koi_interpreter import ErrorPolicy
from koi.koi_runtime import ScriptRunner, ExecutionResult

DEFAULT_SCRIPT = "Koifile"


def split_args(argv: List[str], environ: Mapping[str, str]) -> Tuple[List[str], List[str]]:
    """Splits the command line into (koi flags, script args).

    Normally everything before `--` is for koi and everything after is for
    the script. Under `KOIX` (koi used as a script interpreter via shebang)
    it is the other way around; `KOIX=make` turns `koi build test` into
    `koi ./Koifile -f build test`, defaulting the target to `all`.
    """
    mode = environ.get("KOIX")
    if mode is None:
        if "--" in argv:
            i = argv.index("--")
            return argv[:i], argv[i + 1:]
        return list(argv), []

    before, after = [], []
    seen_separator = False
    for arg in argv:
        if arg == "--" and not seen_separator:
            seen_separator = True
        elif seen_separator:
            after.append(arg)
        else:
            before.append(arg)

    if mode == "make":
        targets = before or ["all"]
        return [f"./{DEFAULT_SCRIPT}", "-f", targets[0], *after], targets[1:]
    return after, before


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="koi", description="Koi build and shell scripting language")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("path", nargs="?", metavar="PATH", help=f"Path to source file (default: ./{DEFAULT_SCRIPT})")
    source.add_argument("-s", "--stdin", action="store_true", help="Read script from stdin")
    parser.add_argument("-f", "--fn", dest="fn", metavar="NAME", help="Function to call after the script has run")
    parser.add_argument("-k", "--keep-going", dest="keep_going", action="store_true",
                        help="Report failing statements and continue with the next one")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def print_diagnostic(message: str):
    print(message, file=sys.stderr, flush=True)


def report(result: ExecutionResult) -> bool:
    """Prints the error of a failed result. Returns True on success.

    Diagnostics from statements that failed under --keep-going were already
    printed by `print_diagnostic` when they happened.
    """
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return False
    return True


async def main(argv: List[str], environ: Optional[Mapping[str, str]] = None) -> int:
    koi_args, script_args = split_args(argv, os.environ if environ is None else environ)
    args = build_parser().parse_args(koi_args)

    if args.stdin:
        source = sys.stdin.read()
    else:
        path = Path(args.path or DEFAULT_SCRIPT)
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as exc:
            hint = "" if args.path else f" (without a PATH koi reads ./{DEFAULT_SCRIPT})"
            print(f"Error: couldn't read {path}: {exc.strerror or exc}{hint}", file=sys.stderr)
            return 1

    policy = ErrorPolicy.CONTINUE if args.keep_going else ErrorPolicy.HALT
    runner = ScriptRunner(error_policy=policy)
    runner.set_args(script_args)
    runner.interpreter.on_diagnostic = print_diagnostic
    if args.path:
        runner.set_import_root(Path(args.path).resolve().parent)

    if not report(await runner.handle_script(source)):
        return 1
    if args.fn and not report(await runner.call_function(args.fn)):
        return 1
    return 0


def entrypoint():
    try:
        code = asyncio.run(main(sys.argv[1:]))
    except KeyboardInterrupt:
        code = 130
    raise SystemExit(code)
