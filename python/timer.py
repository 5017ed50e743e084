#!/usr/bin/env python3
"""
Name: timer
Description: high-precision command timer
License: perl

Times the execution of a given command with microsecond precision and
reports the wall-clock duration as raw seconds, a human-readable
breakdown, or a single line of JSON. The command's own output streams
and exit status are passed through untouched.

The module works both as a standalone program and as a routine called
from other Python code:

    import timer
    status = timer.timer("-f", "make", "all")
"""

import contextlib
import json
import os
import re
import signal
import subprocess
import sys
import threading
import time
from collections import deque, namedtuple

__version__ = "1.0.0"

PROGRAM = "timer"

# Exit codes.
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_MISSING_OPERAND = 2
EXIT_INVALID_OPTION = 22
EXIT_CANNOT_EXECUTE = 126
EXIT_NOT_FOUND = 127
EXIT_INTERRUPTED = 130

# Operating modes.
TOP_LEVEL = "top-level"
EMBEDDED = "embedded"

# Durations in microseconds.
US_PER_SECOND = 1_000_000
US_PER_MINUTE = 60_000_000
US_PER_HOUR = 3_600_000_000
US_PER_DAY = 86_400_000_000

REPORT_PREFIX = "# timer: "

USAGE = "usage: {prog} [-fjhV] [-o FILE] [--] command [args ...]"

# A token such as '-fj' or '-fjh': two or more combinable short flags.
CLUSTER_RE = re.compile(r"-[fjhV]{2,}")
TIMESTAMP_RE = re.compile(r"\d+\.\d{6}")

FLAG_TOKENS = {
    '-f': 'format', '--format': 'format',
    '-j': 'json', '--json': 'json',
    '-h': 'help', '--help': 'help',
    '-V': 'version', '--version': 'version',
}
OUTPUT_TOKENS = ('-o', '--output-to')

# Signals a terminal sends to the whole foreground process group.
KEYBOARD_SIGNALS = ('SIGINT', 'SIGQUIT')


class ClockUnavailableError(RuntimeError):
    """The host offers no usable high-resolution wall clock."""


class UsageError(Exception):
    """A malformed command line. Carries the exit status to report."""

    def __init__(self, message, status=EXIT_INVALID_OPTION):
        super().__init__(message)
        self.status = status


class CommandFailedError(subprocess.CalledProcessError):
    """A command exited non-zero while fail-fast was active."""


Options = namedtuple('Options', ['format', 'json', 'output_path', 'mode', 'help', 'version'])

OutputReport = namedtuple('OutputReport', ['elapsed_us', 'formatted', 'exit_code', 'command', 'destination'])


class TimingSample(namedtuple('TimingSample', ['start_us', 'end_us'])):
    """A start/end pair of microsecond timestamps."""
    __slots__ = ()

    @property
    def elapsed_us(self):
        return elapsed_us(self.start_us, self.end_us)


# --- Clock ---

def wall_clock_source() -> str:
    """Returns the wall clock as 'SECONDS.MICROSECONDS' with six fractional digits."""
    clock_ns = getattr(time, 'time_ns', None)
    if clock_ns is None:
        raise ClockUnavailableError("no high-resolution wall clock available")
    seconds, micros = divmod(clock_ns() // 1000, US_PER_SECOND)
    return f"{seconds}.{micros:06d}"


def parse_timestamp(stamp) -> int:
    """
    Converts a 'SECONDS.MICROSECONDS' string to integer microseconds.
    The decimal point is dropped from the text itself, so no precision
    is lost to floating point.
    """
    if not isinstance(stamp, str) or not TIMESTAMP_RE.fullmatch(stamp):
        raise ClockUnavailableError(f"clock returned an unusable timestamp: {stamp!r}")
    return int(stamp.replace('.', ''), 10)


class ClockSampler:
    """Samples a wall-clock source as integer microseconds."""

    def __init__(self, source=None):
        self.source = source if source is not None else wall_clock_source

    def sample(self) -> int:
        return parse_timestamp(self.source())


def _as_int(value):
    # Explicit base 10: '0000123' is 123, never an octal literal.
    return value if isinstance(value, int) else int(value, 10)


def elapsed_us(start_us, end_us) -> int:
    """Microseconds between two samples. No clamping is applied."""
    return _as_int(end_us) - _as_int(start_us)


# --- Formatting ---

def format_seconds(elapsed: int) -> str:
    """Fixed-point seconds with exactly six fractional digits."""
    sign = '-' if elapsed < 0 else ''
    seconds, micros = divmod(abs(elapsed), US_PER_SECOND)
    return f"{sign}{seconds}.{micros:06d}"


def format_raw(elapsed: int) -> str:
    return f"{format_seconds(elapsed)}s"


def format_time_us(elapsed: int) -> str:
    """
    Breaks a duration down into days, hours, minutes and seconds,
    showing only the units the value needs:

        0.500s, 01m 1.500s, 01h 01m 1.000s, 1d 00h 00m 0.000s

    Seconds carry three decimals, rounded half-up. The rounding is done
    on the whole value before it is split up, so 59.9995s becomes
    '01m 0.000s' and the same carry applies at the hour and day marks.
    """
    if elapsed < 0:
        return '-' + format_time_us(-elapsed)

    rounded = (elapsed + 500) // 1000 * 1000

    days, rest = divmod(rounded, US_PER_DAY)
    hours, rest = divmod(rest, US_PER_HOUR)
    minutes, rest = divmod(rest, US_PER_MINUTE)
    seconds, micros = divmod(rest, US_PER_SECOND)
    secs = f"{seconds}.{micros // 1000:03d}s"

    if rounded >= US_PER_DAY:
        return f"{days}d {hours:02d}h {minutes:02d}m {secs}"
    if rounded >= US_PER_HOUR:
        return f"{hours:02d}h {minutes:02d}m {secs}"
    if rounded >= US_PER_MINUTE:
        return f"{minutes:02d}m {secs}"
    return secs


def json_string(text: str) -> str:
    """A JSON string literal. Control characters are escaped, other text is kept as is."""
    return json.dumps(text, ensure_ascii=False)


def format_json(elapsed: int, exit_code: int, command) -> str:
    """
    One line of JSON with a fixed field order. elapsed_s is written as
    exact fixed-point text rather than a float repr.
    """
    fields = (
        ('elapsed_us', str(elapsed)),
        ('elapsed_s', format_seconds(elapsed)),
        ('elapsed_formatted', json_string(format_time_us(elapsed))),
        ('exit_code', str(exit_code)),
        ('command', '[' + ','.join(json_string(arg) for arg in command) + ']'),
    )
    return '{' + ','.join(f'"{name}":{value}' for name, value in fields) + '}'


# --- Command Execution ---

class ExecutionContext:
    """
    The strict-error state of the code that calls into the timer.

    With fail_fast active, run() raises CommandFailedError for any
    non-zero exit status, much like a shell under 'set -e'.
    """

    def __init__(self, fail_fast=False):
        self.fail_fast = fail_fast

    def run(self, command) -> int:
        status = spawn(command)
        if self.fail_fast and status != 0:
            raise CommandFailedError(status, list(command))
        return status

    @contextlib.contextmanager
    def fail_fast_suspended(self):
        """Turns fail-fast off for the duration of the block, then puts it back."""
        was_active = self.fail_fast
        self.fail_fast = False
        try:
            yield was_active
        finally:
            self.fail_fast = was_active

    def __repr__(self):
        return f"ExecutionContext(fail_fast={self.fail_fast!r})"


def wrap_status(returncode: int) -> int:
    """Maps a raw return code into 0-255; death by signal N gives 128+N."""
    if returncode < 0:
        returncode = 128 - returncode
    return returncode % 256


@contextlib.contextmanager
def keyboard_signals_ignored():
    """Ignores SIGINT and SIGQUIT in this process, restoring the old handlers afterwards."""
    # Handlers can only be changed from the main thread.
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    signums = [getattr(signal, name) for name in KEYBOARD_SIGNALS if hasattr(signal, name)]
    # getsignal() is None for handlers installed outside Python; those are left alone.
    old_handlers = {signum: signal.getsignal(signum) for signum in signums}
    signums = [signum for signum in signums if old_handlers[signum] is not None]
    try:
        for signum in signums:
            signal.signal(signum, signal.SIG_IGN)
        yield
    finally:
        for signum in signums:
            signal.signal(signum, old_handlers[signum])


def spawn(command) -> int:
    """Runs a command with inherited stdio and returns its exit status."""
    # Anything already written by the caller must appear before the child's output.
    sys.stdout.flush()
    sys.stderr.flush()

    if not command[0]:
        print(f"{PROGRAM}: {command[0]}: command not found", file=sys.stderr)
        return EXIT_NOT_FOUND

    try:
        proc = subprocess.Popen(command)
    except FileNotFoundError:
        print(f"{PROGRAM}: {command[0]}: command not found", file=sys.stderr)
        return EXIT_NOT_FOUND
    except OSError as e:
        print(f"{PROGRAM}: {command[0]}: {e.strerror or e}", file=sys.stderr)
        return EXIT_CANNOT_EXECUTE

    # The child was started with default dispositions. Keyboard signals
    # sent to the process group are left for it alone to act on; its
    # resulting status is what gets reported.
    with keyboard_signals_ignored():
        returncode = proc.wait()

    return wrap_status(returncode)


def invoke(command, context) -> int:
    """
    Runs the command once with the context's fail-fast switched off, so a
    failing command hands back its status instead of raising. The
    context's previous setting is restored however the call ends.
    """
    with context.fail_fast_suspended():
        return context.run(command)


# --- Option Parsing ---

def parse_options(argv, mode=TOP_LEVEL):
    """
    Splits a command line into Options and the command vector.

    Clusters like '-fjh' are broken into single flags. '-o' takes the next
    token as its value and cannot be clustered. '--' or the first
    non-option token ends the options. In top-level mode '-h' and '-V'
    stop parsing at once.
    """
    queue = deque(argv)
    flags = {'format': False, 'json': False, 'help': False, 'version': False}
    output_path = None

    while queue:
        token = queue.popleft()

        if token == '--':
            break

        if CLUSTER_RE.fullmatch(token):
            queue.extendleft('-' + char for char in reversed(token[1:]))
            continue

        if token in OUTPUT_TOKENS:
            if not queue:
                raise UsageError(f"option '{token}' requires an argument")
            output_path = queue.popleft()
        elif token in FLAG_TOKENS:
            name = FLAG_TOKENS[token]
            flags[name] = True
            if mode == TOP_LEVEL and name in ('help', 'version'):
                break
        elif token.startswith('-') and token != '-':
            raise UsageError(f"Invalid option '{token}'")
        else:
            queue.appendleft(token)
            break

    options = Options(
        format=flags['format'],
        json=flags['json'],
        output_path=output_path,
        mode=mode,
        help=flags['help'],
        version=flags['version'],
    )
    return options, list(queue)


def print_usage(program_name, file=None):
    print(USAGE.format(prog=program_name), file=file if file is not None else sys.stderr)


def print_help(program_name, file=None):
    """Prints the full help text to stdout."""
    out = file if file is not None else sys.stdout
    print(USAGE.format(prog=program_name), file=out)
    print(file=out)
    print("High-precision command timer. Runs COMMAND, then reports its wall-clock", file=out)
    print("time on stderr. The command's output and exit status are passed through.", file=out)
    print(file=out)
    print("options:", file=out)
    print("  -f, --format          report as days/hours/minutes/seconds", file=out)
    print("  -j, --json            report as a single line of JSON", file=out)
    print("  -o, --output-to FILE  append the report to FILE instead of stderr", file=out)
    print("  -h, --help            show this help message and exit", file=out)
    print("  -V, --version         show the version and exit", file=out)


# --- Reporting ---

def render_report(elapsed: int, exit_code: int, command, options) -> str:
    """Chooses the encoding. JSON wins over the human-readable format."""
    if options.json:
        return format_json(elapsed, exit_code, command)
    if options.format:
        return REPORT_PREFIX + format_time_us(elapsed)
    return REPORT_PREFIX + format_raw(elapsed)


def emit_report(report, stream=None):
    """
    Writes the report after a blank line, to the given stream (stderr by
    default) or appended to report.destination. Write errors propagate.
    """
    payload = f"\n{report.formatted}\n"

    if report.destination is None:
        out = stream if stream is not None else sys.stderr
        out.write(payload)
        out.flush()
        return

    # 'a' creates a missing file and never truncates an existing one.
    with open(report.destination, 'a', encoding='utf-8', errors='surrogateescape') as out:
        out.write(payload)


# --- Driver ---

class Timer:
    """
    Parses a command line, runs and times the command, and reports.

    mode is TOP_LEVEL for a process entry point (help/version honoured,
    missing command is an error, strict errors) or EMBEDDED for a
    routine inside a larger program (help/version ignored).
    """

    def __init__(self, mode=EMBEDDED, context=None, clock=None, stream=None, program_name=PROGRAM):
        if mode not in (TOP_LEVEL, EMBEDDED):
            raise ValueError(f"unknown mode: {mode!r}")
        self.mode = mode
        if context is None:
            # Models the caller's state only. invoke() suspends it around the
            # child, so it is never consulted while a command runs.
            context = ExecutionContext(fail_fast=(mode == TOP_LEVEL))
        self.context = context
        self.clock = clock if clock is not None else ClockSampler()
        self.stream = stream
        self.program_name = program_name

    def _error_stream(self):
        return self.stream if self.stream is not None else sys.stderr

    def _usage_error(self, message):
        err = self._error_stream()
        print(f"{self.program_name}: {message}", file=err)
        print_usage(self.program_name, file=err)

    def run(self, argv) -> int:
        """Returns the command's exit status, or a usage status if it never ran."""

        # --- 1. Parse Options ---
        try:
            options, command = parse_options(list(argv), self.mode)
        except UsageError as e:
            self._usage_error(str(e))
            return e.status

        if self.mode == TOP_LEVEL:
            if options.help:
                print_help(self.program_name)
                return EXIT_SUCCESS
            if options.version:
                print(f"{self.program_name} {__version__}")
                return EXIT_SUCCESS

        if not command:
            if self.mode == TOP_LEVEL:
                self._usage_error("missing command operand")
                return EXIT_MISSING_OPERAND
            return EXIT_SUCCESS

        # --- 2. Run and Measure ---
        start_us = self.clock.sample()
        exit_code = invoke(command, self.context)
        end_us = self.clock.sample()
        sample = TimingSample(start_us, end_us)

        # --- 3. Format and Emit ---
        report = OutputReport(
            elapsed_us=sample.elapsed_us,
            formatted=render_report(sample.elapsed_us, exit_code, command, options),
            exit_code=exit_code,
            command=tuple(command),
            destination=options.output_path,
        )
        emit_report(report, self.stream)
        return report.exit_code


def timer(*args, context=None, clock=None, stream=None) -> int:
    """
    Embedded entry point: timer('-f', 'sleep', '1') runs 'sleep 1', reports
    the time, and returns its exit status. '-h' and '-V' are ignored.
    """
    return Timer(EMBEDDED, context=context, clock=clock, stream=stream).run(args)


def main():
    """Parses sys.argv, times the command, and exits with its status."""
    program_name = os.path.splitext(os.path.basename(sys.argv[0]))[0] or PROGRAM
    runner = Timer(TOP_LEVEL, program_name=program_name)

    try:
        status = runner.run(sys.argv[1:])
    except ClockUnavailableError as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    except OSError as e:
        # The report could not be written.
        if e.filename is not None:
            print(f"{program_name}: {e.filename}: {e.strerror}", file=sys.stderr)
        else:
            print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)

    sys.exit(status)


if __name__ == "__main__":
    main()
