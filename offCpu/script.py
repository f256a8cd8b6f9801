"""Systemtap script templates for off-CPU sampling."""

import enum
import shlex
from string import Template


class Mode(enum.Enum):
    SAMPLING = "sampling"
    DISTRIBUTION = "distribution"


# Tracer tuning macros injected unless the caller overrides them.
# A value of None means a bare -DNAME flag.
TUNING_DEFAULTS = {
    "MAXACTION": 100000,
    "MAXMAPENTRIES": 5000,
    "MAXBACKTRACE": 200,
    "MAXSTRINGLEN": 2048,
    "STP_NO_OVERLOAD": None,
}

PREAMBLE = r'''probe begin {
    warn(sprintf("Tracing %d ($exec_path)...\n", target()))
}
'''

SAMPLING_BODY = r'''
global bts
global start_time

probe scheduler.cpu_off {
    if (pid() == target()) {
        if (!start_time[tid()]) {
            start_time[tid()] = gettimeofday_us()
        }
    }
}

probe scheduler.cpu_on {
    if (pid() == target()) {
        t = tid()
        begin = start_time[t]
        if (begin > 0) {
            elapsed = gettimeofday_us() - begin
            if (elapsed >= $min_elapsed) {
                bts[ubacktrace()] <<< elapsed
            }
            delete start_time[t]
        }
    }
}
'''

SAMPLING_POSTAMBLE = r'''
probe timer.s($time) {
    nstacks = 0
    foreach (bt in bts limit 1) {
        nstacks++
    }

    if (nstacks == 0) {
        warn("Too few backtraces found. Try increasing the sampling time with the -t option. Quitting...\n")
        exit()
    }

    warn("Time's up. Quitting now...(it may take a while)\n")
    exit()
}

probe end {
    foreach (bt in bts- limit $limit) {
        print_ustack(bt)
        printf("\t%d\n", @sum(bts[bt]))
    }
}
'''

DISTRIBUTION_BODY = r'''
global start_time
global elapsed_times

probe scheduler.cpu_off {
    if (pid() == target() && !start_time[tid()]) {
        start_time[tid()] = gettimeofday_us()
    }
}

probe scheduler.cpu_on {
    if (pid() == target()) {
        t = tid()
        begin = start_time[t]
        if (begin > 0) {
            elapsed = gettimeofday_us() - begin
            if (elapsed >= $min_elapsed) {
                elapsed_times <<< elapsed
            }
            delete start_time[t]
        }
    }
}

probe timer.s($time) {
    warn("Exiting...\n")
    exit()
}

probe end {
    if (@count(elapsed_times) == 0) {
        printf("No samples found so far.\n")

    } else {
        printf("Distribution of off-CPU time (in us):\n")
        printf("min/avg/max: %d/%d/%d\n",
               @min(elapsed_times), @avg(elapsed_times), @max(elapsed_times))
        println(@hist_log(elapsed_times))
    }
}
'''

TEMPLATES = {
    Mode.SAMPLING: Template(PREAMBLE + SAMPLING_BODY + SAMPLING_POSTAMBLE),
    Mode.DISTRIBUTION: Template(PREAMBLE + DISTRIBUTION_BODY),
}


def _quote_stap_string(value):
    """Escape a value for use inside a double-quoted stap string literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def render_script(mode, exec_path, time, min_elapsed=4, limit=1024):
    """Render the systemtap script for the given mode.

    Args:
        mode: Mode.SAMPLING or Mode.DISTRIBUTION
        exec_path: Executable path of the target process
        time: Sampling window in seconds
        min_elapsed: Minimal off-CPU time (in us) to record
        limit: Maximum number of backtraces printed in sampling mode

    Returns:
        The script source as a string
    """
    return TEMPLATES[Mode(mode)].substitute(
        exec_path=_quote_stap_string(exec_path),
        time=int(time),
        min_elapsed=int(min_elapsed),
        limit=int(limit),
    )


def _defined_macros(tracer_args):
    """Return the set of macro names defined with -D in an argument string."""
    tokens = shlex.split(tracer_args)
    names = set()
    for i, token in enumerate(tokens):
        if token == "-D":
            # "-D NAME=VALUE" form
            if i + 1 < len(tokens):
                names.add(tokens[i + 1].split("=", 1)[0])
        elif token.startswith("-D"):
            names.add(token[2:].split("=", 1)[0])
    return names


def add_default_tracer_args(tracer_args, defaults=None):
    """Append tuning macros that the caller has not already set.

    Each macro is matched independently and only as a whole -D token, so
    "-DMAXACTION_FOO=1" does not count as an override of MAXACTION.

    Args:
        tracer_args: Extra tracer arguments given by the user
        defaults: Mapping of macro name to value (default: TUNING_DEFAULTS)

    Returns:
        The argument string with the missing defaults appended
    """
    if defaults is None:
        defaults = TUNING_DEFAULTS

    tracer_args = (tracer_args or "").strip()
    defined = _defined_macros(tracer_args)

    extra = []
    for name, value in defaults.items():
        if name in defined:
            continue
        if value is None:
            extra.append(f"-D{name}")
        else:
            extra.append(f"-D{name}={value}")

    return " ".join([tracer_args] + extra).strip()
