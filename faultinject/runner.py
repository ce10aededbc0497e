"""Building the interception library and running a target program under it."""

from __future__ import annotations

import getopt
import os
import subprocess
import sys
from pathlib import Path
from typing import Sequence

from .injection import REPLAYFILE
from .stubgen import render_stub

STUB_SOURCE = "intercept.stub.cpp"
STUB_LIBRARY = "intercept.stub.dylib" if sys.platform == "darwin" else "intercept.stub.so"
SYMBOLS_FILE = "symbols"

_APPLE_EXPLICIT_LIBS = (
    "/System/Library/Frameworks/ApplicationServices.framework/Versions/A/Frameworks/"
    "ATS.framework/Versions/A/Resources/libFontRegistry.dylib"
)


class StubError(Exception):
    """The stub library could not be generated or compiled."""


def _log(message: str) -> None:
    print(message, file=sys.stderr)


def _compile_command(source_file: str, output_file: str) -> str:
    common = (
        f"g++ -g -o {output_file} {source_file} inter.cpp Trigger.cpp triggers/*.cpp "
        "`xml2-config --cflags` `xml2-config --libs` -O0 -shared"
    )
    if sys.platform == "darwin":
        return (
            f"{common} -Xlinker -exported_symbols_list -Xlinker symbols "
            "-Xlinker -exported_symbols_list -Xlinker triggers/exported_symbols_list"
        )
    return f"{common} -fPIC -lrt -ldl"


def compile_stub(source_file: str, output_file: str, verbose: bool = False) -> None:
    """Compile the generated stub into a shared library; raise StubError on failure."""
    command = _compile_command(str(source_file), str(output_file))
    if verbose:
        _log(f"[LFI] Compiling stub library {output_file} from {source_file}")
        _log(f"[LFI] Exec: {command}")
    result = subprocess.run(command, shell=True)
    if result.returncode != 0:
        raise StubError("Compile failed")
    if verbose:
        _log("[LFI] Compiled successfully...")


def generate_stub(
    config_path: str | os.PathLike[str],
    default_enabled: int = 1,
    examineargs_path: str | None = None,
    verbose: bool = False,
) -> Path:
    """Write the stub source for a plan into the working directory and compile it.

    Returns the path of the compiled library.
    """
    if verbose:
        _log(f"[LFI] Generating stub file {STUB_SOURCE} from {config_path}")
    try:
        stub = render_stub(Path(config_path).read_bytes(), default_enabled, examineargs_path)
    except (OSError, ValueError) as exc:
        raise StubError(f"Unable to open {config_path}") from exc
    Path(STUB_SOURCE).write_text(stub.source, encoding="utf-8")
    Path(SYMBOLS_FILE).write_text(stub.symbols_text, encoding="utf-8")
    compile_stub(STUB_SOURCE, STUB_LIBRARY, verbose)
    return Path(STUB_LIBRARY)


def _finish_replay_plan() -> None:
    try:
        fd = os.open(REPLAYFILE, os.O_WRONLY | os.O_APPEND)
    except OSError:
        return
    try:
        os.write(fd, b"</plan>\n")
    finally:
        os.close(fd)


def run_subject(argv: Sequence[str], preload_library: str, verbose: bool = False) -> int:
    """Run ``argv`` with ``preload_library`` (from the working directory) preloaded.

    Returns 0 on a clean exit, the exit status when it is non-zero, and
    128 plus the signal number when the program was killed by a signal.
    Raises OSError when the program cannot be started.
    """
    if not argv:
        raise ValueError("no program to run")
    preload_path = os.path.join(os.getcwd(), preload_library)
    env = dict(os.environ)
    if sys.platform == "darwin":
        preload_var = "DYLD_INSERT_LIBRARIES"
        preload_path = f"{preload_path}:{_APPLE_EXPLICIT_LIBS}"
        env["DYLD_FORCE_FLAT_NAMESPACE"] = ""
        env["DYLD_SHARED_REGION"] = "avoid"
        if verbose:
            _log("[LFI] env DYLD_FORCE_FLAT_NAMESPACE=''")
            _log("[LFI] env DYLD_SHARED_REGION='avoid'")
    else:
        preload_var = "LD_PRELOAD"
    env[preload_var] = preload_path
    if verbose:
        _log(f"[LFI] env {preload_var}='{preload_path}'")
        _log(f"[LFI] exec {argv[0]} with {len(argv)} argument(s)")

    program = argv[0] if "/" in argv[0] else os.path.join(".", argv[0])
    result = subprocess.run(list(argv), env=env, executable=program)
    if result.returncode >= 0:
        _log(f"Process exited normally. Exit status: {result.returncode}")
        return result.returncode
    signal_number = -result.returncode
    _log(f"Process terminated by signal {signal_number}")
    _finish_replay_plan()
    return 128 + signal_number


def _atoi(text: str) -> int:
    text = text.lstrip()
    sign = ""
    if text[:1] in ("+", "-"):
        sign, text = text[0], text[1:]
    digits = ""
    for char in text:
        if not char.isdigit():
            break
        digits += char
    return int(sign + digits) if digits else 0


def _usage(prog: str) -> None:
    print(
        f"Usage: {prog} [-e 0|1] [-E /path/to/examine_args.cpp] [-f] "
        "[-t <targetExecutable>] [-v] <configurationFile>"
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Generate and compile the stub for a plan, optionally running a target under it."""
    prog = Path(sys.argv[0]).name if sys.argv and sys.argv[0] else "faultinject"
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        options, positional = getopt.gnu_getopt(args, "e:E:f:t:v")
    except getopt.GetoptError as exc:
        if exc.opt == "f":
            _log("Option -f requires an argument.")
        elif exc.opt and exc.opt.isprintable():
            _log(f"Unknown option `-{exc.opt}'.")
        else:
            _log(f"Unknown option character `\\x{ord(exc.opt[:1] or chr(0)):x}'.")
        return 1

    default_enabled = 1
    examineargs_path: str | None = None
    run_target: str | None = None
    verbose = False
    for option, value in options:
        if option == "-e":
            default_enabled = _atoi(value)
        elif option == "-E":
            examineargs_path = value
        elif option == "-t":
            run_target = value
        elif option == "-v":
            verbose = True
        # -f (crash check output) is accepted and has no further effect

    if not positional:
        _usage(prog)
        return -1

    try:
        library = generate_stub(positional[0], default_enabled, examineargs_path, verbose)
    except StubError as exc:
        _log(str(exc))
        library = None

    test_score = 0
    if run_target is not None and library is not None:
        run_argv = run_target.replace("\t", " ").split()
        try:
            test_score = run_subject(run_argv, str(library), verbose)
        except (OSError, ValueError):
            _log("A problem occurred starting the target")
            test_score = -1
    return test_score