import argparse
import shlex
import sys

from .core import do_sample
from .script import Mode

EPILOG = """\
Examples:
    sample-bt-off-cpu -p 12345 -t 10
    sample-bt-off-cpu -p 12345 -t 5 -a '-DMAXACTION=100000'
    sample-bt-off-cpu --distr -p 12345 -t 10 --min=1
"""


def _join_tracer_args(argv):
    """Rewrite "-a VALUE" as "-a=VALUE".

    argparse refuses a separate option value that starts with a dash,
    which is the usual shape of tracer arguments (e.g. -a '-DMAXACTION=100000').
    """
    result = []
    i = 0
    while i < len(argv):
        if argv[i] == "-a" and i + 1 < len(argv):
            result.append(f"-a={argv[i + 1]}")
            i += 2
        else:
            result.append(argv[i])
            i += 1
    return result


def build_parser():
    parser = argparse.ArgumentParser(
        prog="sample-bt-off-cpu",
        description="Sample off-CPU time of a running process using systemtap.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-p", dest="pid", metavar="PID", type=int, required=True,
                        help="Specify the user process pid.")
    parser.add_argument("-t", dest="time", metavar="SECONDS", type=int, required=True,
                        help="Specify the number of seconds for sampling.")
    parser.add_argument("-a", dest="tracer_args", metavar="ARGS", default="",
                        help="Pass extra arguments to the stap utility.")
    parser.add_argument("-d", dest="dump", action="store_true",
                        help="Dump out the systemtap script source.")
    parser.add_argument("--distr", action="store_true",
                        help="Analyze the distribution of the elapsed off-CPU times only.")
    parser.add_argument("-l", dest="limit", metavar="COUNT", type=int, default=1024,
                        help="Only output COUNT most frequent backtrace samples. (Default: 1024)")
    parser.add_argument("--min", dest="min_elapsed", metavar="US", type=int, default=4,
                        help="Minimal elapsed off-CPU time (in us) to be tracked. (Default: 4)")
    parser.add_argument("-c", "--config", metavar="FILE",
                        help="YAML file overriding the tracer name, minimal version and tuning defaults.")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Print extra diagnostics.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Suppress informational messages.")
    return parser


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    args = parser.parse_args(_join_tracer_args(argv))

    if args.pid <= 0:
        parser.error("-p must be a positive process id.")
    if args.time <= 0:
        parser.error("-t must be a positive number of seconds.")
    if args.limit <= 0:
        parser.error("-l must be a positive count.")
    if args.min_elapsed < 0:
        parser.error("--min must not be negative.")
    try:
        shlex.split(args.tracer_args)
    except ValueError as e:
        parser.error(f"-a: {e}")

    verbosity = 1
    if args.verbose:
        verbosity = 2
    elif args.quiet:
        verbosity = 0

    do_sample(
        args.pid,
        args.time,
        min_elapsed=args.min_elapsed,
        limit=args.limit,
        mode=Mode.DISTRIBUTION if args.distr else Mode.SAMPLING,
        tracer_args=args.tracer_args,
        dump=args.dump,
        config_file=args.config,
        verbosity=verbosity,
    )


if __name__ == "__main__":
    main()
