import contextlib
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys

from .config import ConfigError, DEFAULT_CONFIG, load_config, parse_version
from .script import Mode, add_default_tracer_args, render_script

SUPPORTED_PLATFORM = "linux"

# Fixed flags passed to stap ahead of any user-supplied arguments.
STAP_BASE_ARGS = ["--skip-badvars", "--all-modules"]

VERSION_REGEX = re.compile(r"version\s+(\d+\.\d+)", re.IGNORECASE)


class UnsupportedPlatformError(Exception):
    """Raised when running on an OS the tracer does not support."""
    pass


class TracerNotFoundError(Exception):
    """Raised when the tracer binary is not found on the system."""
    pass


class TracerVersionError(Exception):
    """Raised when the tracer is too old or its version can't be determined."""
    pass


class ProcessNotFoundError(Exception):
    """Raised when the target process's executable can't be resolved."""
    pass


def ensure_supported_platform(platform=None):
    """Check that we are running on Linux."""
    if platform is None:
        platform = sys.platform
    if not platform.startswith(SUPPORTED_PLATFORM):
        raise UnsupportedPlatformError(
            f"Only {SUPPORTED_PLATFORM} is supported but I am on {platform}."
        )


def ensure_tracer_available(tracer="stap"):
    """Check if the tracer is available on the system.

    Returns:
        The full path of the tracer binary
    """
    path = shutil.which(tracer)
    if path is None:
        raise TracerNotFoundError(
            f"{tracer} not found. Please install systemtap:\n"
            "  Ubuntu/Debian: sudo apt install systemtap\n"
            "  Fedora/RHEL:   sudo dnf install systemtap\n"
            "  Arch:          sudo pacman -S systemtap"
        )
    return path


def get_tracer_version(tracer="stap"):
    """Run `<tracer> -V` and return its version as a (major, minor) tuple.

    stap prints its banner to stderr, so both streams are searched.
    """
    try:
        result = subprocess.run(
            [tracer, "-V"],
            capture_output=True,
            text=True,
            check=False
        )
    except OSError as e:
        raise TracerNotFoundError(f"Could not run {tracer}: {e}")

    output = (result.stdout or "") + (result.stderr or "")
    match = VERSION_REGEX.search(output)
    if not match:
        raise TracerVersionError(f"{tracer} version not found: {output.strip()}")
    return parse_version(match.group(1))


def ensure_tracer_version(tracer="stap", min_version="2.1"):
    """Check that the tracer is at least `min_version`."""
    found = get_tracer_version(tracer)
    required = parse_version(min_version)
    if found < required:
        raise TracerVersionError(
            f"at least {tracer} {min_version} is required "
            f"but found {found[0]}.{found[1]}"
        )
    return found


def resolve_exec_path(pid, proc_root="/proc"):
    """Return the executable path of a running process."""
    exe_link = os.path.join(proc_root, str(pid), "exe")
    try:
        exec_path = os.readlink(exe_link)
    except OSError:
        raise ProcessNotFoundError(
            f"Process {pid} is not running or you do not have enough permissions."
        )
    if not os.access(exec_path, os.R_OK):
        raise ProcessNotFoundError(
            f"Executable {exec_path} of process {pid} is not readable."
        )
    return exec_path


def build_tracer_command(tracer, pid, exec_path, tracer_args=""):
    """Build the argv used to launch the tracer reading its script from stdin."""
    # -x sets target(); -d and --ldd load symbols for the executable and its libraries
    return ([tracer] + STAP_BASE_ARGS +
            ["-x", str(pid), "-d", exec_path, "--ldd"] +
            shlex.split(tracer_args) + ["-"])


def run_tracer(command, script, verbosity=1):
    """Launch the tracer, feed it the script on stdin and wait for it.

    Returns:
        The tracer's exit code
    """
    if verbosity >= 2:
        print(f"Running: {shlex.join(command)}", file=sys.stderr)

    # stdout/stderr are inherited so the user sees the tracer's live output.
    proc = subprocess.Popen(command, stdin=subprocess.PIPE, text=True)

    try:
        proc.stdin.write(script)
        proc.stdin.close()
        return_code = proc.wait()
    except BrokenPipeError:
        # The tracer exited before reading the whole script.
        with contextlib.suppress(BrokenPipeError):
            proc.stdin.close()
        return_code = proc.wait()
    except KeyboardInterrupt:
        print("\nInterrupted by user. Terminating tracer.", file=sys.stderr)
        proc.send_signal(signal.SIGINT)
        proc.wait()
        sys.exit(1)

    return return_code


def do_sample(pid, time, min_elapsed=4, limit=1024, mode=Mode.SAMPLING,
              tracer_args="", dump=False, config_file=None, verbosity=1):
    """Sample off-CPU time of a process with systemtap.

    Args:
        pid: Target process id
        time: Sampling window in seconds
        min_elapsed: Minimal off-CPU time (in us) to record
        limit: Maximum number of backtraces to report (sampling mode)
        mode: Mode.SAMPLING or Mode.DISTRIBUTION
        tracer_args: Extra arguments for the tracer
        dump: If True, print the script instead of running it
        config_file: Optional YAML configuration file
        verbosity: Output level (0=quiet, 1=normal, 2=verbose)
    """
    mode = Mode(mode)
    # Keep stdout clean for the script itself in dump mode.
    info = sys.stderr if dump else sys.stdout

    try:
        config = load_config(config_file) if config_file else DEFAULT_CONFIG
        tracer = config["tracer"]

        ensure_supported_platform()
        ensure_tracer_available(tracer)
        version = ensure_tracer_version(tracer, config["min_version"])
        exec_path = resolve_exec_path(pid)
    except (ConfigError, UnsupportedPlatformError, TracerNotFoundError,
            TracerVersionError, ProcessNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if verbosity >= 2:
        print(f"Found {tracer} {version[0]}.{version[1]}", file=info)
        print(f"Target executable: {exec_path}", file=info)

    script = render_script(mode, exec_path, time, min_elapsed=min_elapsed, limit=limit)

    if dump:
        sys.stdout.write(script)
        return

    try:
        tracer_args = add_default_tracer_args(tracer_args, config["defaults"])
        command = build_tracer_command(tracer, pid, exec_path, tracer_args)
    except ValueError as e:
        print(f"Error: Invalid tracer arguments: {e}", file=sys.stderr)
        sys.exit(1)

    if verbosity >= 1:
        print(f"Sampling off-CPU time of process {pid} for {time} seconds "
              f"({mode.value} mode)...", file=info)

    try:
        return_code = run_tracer(command, script, verbosity)
    except OSError as e:
        print(f"Error: Cannot run {tracer}: {e}", file=sys.stderr)
        sys.exit(1)

    if return_code != 0:
        if verbosity >= 1:
            print(f"\n--- {tracer} FINISHED WITH NON-ZERO EXIT CODE: {return_code} ---",
                  file=sys.stderr)
        # Exit with the same code so scripts can detect failure
        sys.exit(return_code)
