import asyncio
import sys
from pathlib import Path

from kestrel.kestrel_debug import trace_listener
from kestrel.kestrel_runtime import ScriptRunner
from kestrel.kestrel_printer import Printer


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def print_effects(result, include_stderr: bool = True):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''), end="")
        elif include_stderr and effect.get('topics') == ['stderr']:
            print(effect.get('message', ''), file=sys.stderr)
    sys.stdout.flush()


def make_runner(trace: bool, source_dir: str) -> ScriptRunner:
    runner = ScriptRunner(source_dir=source_dir)
    if trace:
        runner.evaluator.messages.add_listener(trace_listener())
    return runner


async def run_script_file(file_path: str, trace: bool = False):
    """Run a Kestrel script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    runner = make_runner(trace, str(p.parent.resolve()))
    result = await runner.handle_script(source, origin=str(p.resolve()))
    # Workers started by the script finish before the process exits
    await runner.join_tasks()
    print_effects(result, include_stderr=result.status != 'error')
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        context = runner.source_context(result, source)
        if context:
            print(context, file=sys.stderr)
        raise SystemExit(1)


async def main(argv=None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    args = list(sys.argv[1:] if argv is None else argv)
    trace = "--trace" in args
    args = [a for a in args if a != "--trace"]
    if args and not args[0].startswith("-"):
        await run_script_file(args[0], trace)
        return

    print("Kestrel REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = make_runner(trace, str(Path.cwd()))
    printer = Printer()

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            result = await runner.handle_script(line, origin="<repl>")

            if result.status == 'error':
                print_effects(result, include_stderr=False)
                print(result.format_error(), file=sys.stderr)
                continue

            print_effects(result)
            if result.value is not None:
                print(printer.pformat(result.obj))

        except EOFError:
            print("\nExiting.")
            break
    runner.cancel_tasks()


def cli_main():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    cli_main()
