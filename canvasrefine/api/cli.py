"""
Interactive CLI adapter for canvasrefine.

Architectural role:
- Exposes the generate / refine / reroll pipeline in a terminal.
- Keeps a pointer to the current entry and a list of pending region marks.
- Delegates all pipeline work to `canvasrefine.core.engine.RefinementEngine`.

Request lifecycle (per input line):
1. Read stdin.
2. Handle local commands (`exit`/`quit`, `/image`, `/mark`, `/refine`,
   `/reroll`, `/history`, `/help`).
3. Run the matching engine operation with `asyncio.run`.
4. Print the stored artifact reference or the failure kind.

Input validation behavior:
- Empty input is ignored.
- `/mark` requires four numeric corner values (canvas pixels).
- `/refine` and `/reroll` require a current entry.

Error handling strategy:
- Generation failures are printed, not raised.
- Unknown entries and invalid chain operations print the error message.
- EOF and keyboard interrupts terminate the loop without traceback output.
"""

from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
import os
import sys
import uuid

from canvasrefine.core.engine import RefinementEngine, RefinementOutcome, build_engine
from canvasrefine.core.models import Annotation, ShapeKind
from canvasrefine.memory.version_chain import ChainError, EntryNotFound


HELP_TEXT = """
Commands:
 /image <prompt>                      generate a new image
 /mark <x1> <y1> <x2> <y2> <feedback> add a rectangle mark (canvas pixels)
 /refine [global feedback]            refine the current image with pending marks
 /reroll                              regenerate the current entry
 /history                             show the current thread
 exit                                 quit
"""


# =========================================================
# OUTPUT
# =========================================================

def print_outcome(outcome: RefinementOutcome) -> None:
    """Print one pipeline outcome."""
    result = outcome.result
    if result.success:
        print(f"\nImage stored: {result.artifact_ref}")
    else:
        print(f"\nGeneration failed ({result.error_kind.value}): {result.message}")
    if result.enrichment:
        print(f"Prompt enrichment: {result.enrichment}")
    if outcome.entry is not None:
        print(f"Entry: {outcome.entry.id} ({outcome.entry.status.value})")
        print(f"Versions in chain: {len(outcome.chain)}")


def parse_mark(arguments: list[str], index: int) -> Annotation:
    """Build a rectangle mark from `/mark` arguments.

    Raises:
        ValueError: When fewer than four numeric values are given.
    """
    if len(arguments) < 4:
        raise ValueError("Usage: /mark <x1> <y1> <x2> <y2> <feedback>")
    points = [float(value) for value in arguments[:4]]
    return Annotation(
        id=f"mark-{index}",
        shape_kind=ShapeKind.RECTANGLE,
        raw_points=points,
        feedback_text=" ".join(arguments[4:]),
    )


# =========================================================
# MAIN
# =========================================================

def main():
    """
    Run the CLI loop.

    Session state:
    - `session_id` is generated once per process.
    - `current_entry` follows the latest successful generation.
    - Pending marks are cleared after each refinement.
    """
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING"))

    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")

    engine: RefinementEngine = build_engine()
    session_id = uuid.uuid4().hex[:12]
    current_entry = None
    pending_marks: list[Annotation] = []

    print("canvasrefine started. (Type 'exit' to quit, '/help' for commands)")
    print(f"Model: {engine.options.model}  Session: {session_id}")
    print("-" * 60)

    while True:

        try:
            line = input("> ").strip()

        except EOFError:
            print("\nSession ended (EOF received).")
            break

        except KeyboardInterrupt:
            print("\nOperation cancelled by user.")
            break

        if not line:
            continue

        # EXIT
        if line.lower() in ("exit", "quit"):
            print("Shutting down.")
            break

        command, _, rest = line.partition(" ")
        command = command.lower()
        rest = rest.strip()

        try:
            if command == "/help":
                print(HELP_TEXT)

            elif command == "/image":
                if not rest:
                    print("Usage: /image <prompt>")
                    continue
                outcome = asyncio.run(engine.generate(rest, session_id))
                print_outcome(outcome)
                if outcome.result.success:
                    current_entry = outcome.entry
                    pending_marks = []

            elif command == "/mark":
                pending_marks.append(parse_mark(rest.split(), len(pending_marks) + 1))
                print(f"Marks pending: {len(pending_marks)}")

            elif command == "/refine":
                if current_entry is None:
                    print("No image to refine yet. Use /image first.")
                    continue
                outcome = asyncio.run(engine.refine(current_entry.id, pending_marks, global_feedback=rest))
                print_outcome(outcome)
                pending_marks = []
                if outcome.result.success:
                    current_entry = outcome.entry

            elif command == "/reroll":
                if current_entry is None:
                    print("Nothing to reroll yet. Use /image first.")
                    continue
                outcome = asyncio.run(engine.reroll(current_entry.id))
                print_outcome(outcome)
                if outcome.result.success:
                    current_entry = outcome.entry

            elif command == "/history":
                if current_entry is None:
                    print("No thread yet.")
                    continue
                for entry in asyncio.run(engine.thread(current_entry.thread_id)):
                    marker = " (current)" if entry.id == current_entry.id else ""
                    print(f"{entry.id} {entry.kind.value} {entry.status.value} {entry.artifact_ref or '-'}{marker}")

            else:
                print("Unknown command. Type /help for commands.")

        except (EntryNotFound, ChainError, ValueError) as exc:
            print(f"Error: {exc}")

        print("\n" + "-" * 60 + "\n")


if __name__ == "__main__":
    main()
