# Stdlib imports
import os
import pathlib
import sys
import typing

# Vendor imports
import humanize
import rich
import rich.markup
import sh


def print(*args, file=sys.stdout):
    rich.print(*args, file=file)


def print_line(*args, file=sys.stdout):
    print("-" * 8, *args, file=file)


def print_nested_line(*args):
    print("-" * 12, *args)


def print_warning(message: str):
    print_line(f"[yellow]{message}", file=sys.stderr)


def print_error(message: str):
    print("-" * 8, f"[red]{message}", file=sys.stderr)
    exit(1)


def print_kv(key: str, value: str = ""):
    print(f"[yellow]{key}[/]: {value}")


def print_job(name: str, message: str, file=sys.stdout):
    print(f"[cyan]\\[{rich.markup.escape(name)}][/]\t{message}", file=file)


def print_job_output(name: str, program: str, line: str, stderr: bool = False):
    """Echo one line of a child process' output, prefixed with the job name."""
    print_job(
        name,
        f"[dim]{program}:[/] {rich.markup.escape(line.rstrip())}",
        file=sys.stderr if stderr else sys.stdout,
    )


def human_readable(num):
    return humanize.naturalsize(num, binary=True)


def fully_qualified_path(path: typing.Union[str, pathlib.Path]) -> pathlib.Path:
    return pathlib.Path(path).expanduser().absolute()


def execution_env(extra: typing.Optional[dict[str, str]] = None) -> dict[str, str]:
    # Child processes inherit the whole environment of this process
    return {**dict(os.environ), **(extra or {})}


def maximize_niceness():
    os.nice(20)


OutputCallback = typing.Callable[[str], typing.Any]


def run_command_politely(
    command: sh.Command,
    args: list[typing.Any],
    env: typing.Optional[dict] = None,
    okCodes: typing.Sequence[int] = (0,),
    on_stdout: typing.Optional[OutputCallback] = None,
    on_stderr: typing.Optional[OutputCallback] = None,
    cwd: typing.Optional[str] = None,
    timeout: typing.Optional[float] = None,
):
    """Run a command at the lowest priority and block until it exits.

    Output is handed line by line to the callbacks. Raises
    `sh.ErrorReturnCode` for exit codes outside of `okCodes` and
    `sh.TimeoutException` when `timeout` seconds pass.
    """
    # Start the command
    running_proc = command(
        *[str(arg) for arg in args],
        _preexec_fn=maximize_niceness,
        _bg=True,
        _env=env if env is not None else execution_env(),
        _out=on_stdout or (lambda line: None),
        _err=on_stderr or (lambda line: None),
        _ok_code=list(okCodes),
        _cwd=cwd,
        _timeout=timeout,
    )

    # The running process should not be a string
    assert isinstance(running_proc, sh.RunningCommand)

    # Wait for it to finish and kill it on keyboard interrupts
    try:
        running_proc.wait()
    except KeyboardInterrupt:
        print_line("Keyboard interrupt detected")
        if running_proc.is_alive():
            print_line("Killing the running process...")
            running_proc.kill()
        raise

    return running_proc
