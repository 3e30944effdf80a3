"""Showing a diff to a person and letting them settle its conflicts.

review_conflicts() is the chooser the CLI hands to Workspace for the "ask"
policy. With a reviewer model configured, anything typed that is not a
command is sent to it as a question about the differences.
"""

import json

import litellm
from rich.console import Console
from rich.table import Table

from hjx.diff import CACHE, CONFLICT, FILE, ONLY_CACHE, ONLY_FILE, conflicts, has_changes, summarize


def diff_to_text(diff):
    """Convert a diff to plain text for LLM context."""
    parts = []
    for name, entries in diff.items():
        for e in entries:
            parts.append(f"--- {e.status}: {name}/{e.id} ({e.label}) ---")
            if e.file_record is not None:
                parts.append(f"file  (time={e.file_time}): {json.dumps(e.file_record, ensure_ascii=False)}")
            if e.cache_record is not None:
                parts.append(f"cache (time={e.cache_time}): {json.dumps(e.cache_record, ensure_ascii=False)}")
            if e.status == CONFLICT:
                parts.append(f"suggested winner: {e.suggested_winner}")
            parts.append("")
    return "\n".join(parts)


def _format_time(value):
    return "-" if value is None else str(value)


def display_diff(diff, console=None):
    """Render the diff as one table per collection, GitHub-style colors."""
    console = console or Console()

    if not has_changes(diff):
        console.print("[dim]File and cache agree.[/dim]")
        return

    status_colors = {ONLY_FILE: "cyan", ONLY_CACHE: "green", CONFLICT: "yellow"}
    for name, entries in diff.items():
        if not entries:
            continue
        table = Table(title=name, title_justify="left")
        table.add_column("Status", style="bold")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("File time", style="dim")
        table.add_column("Cache time", style="dim")
        table.add_column("Suggested", style="bold")
        for e in entries:
            color = status_colors[e.status]
            table.add_row(
                f"[{color}]{e.status}[/{color}]",
                e.id,
                e.label,
                _format_time(e.file_time),
                _format_time(e.cache_time),
                e.suggested_winner if e.status == CONFLICT else "",
            )
        console.print(table)

    counts = summarize(diff)
    console.print(
        f"[cyan]{counts[ONLY_FILE]} only in file[/cyan] | "
        f"[green]{counts[ONLY_CACHE]} only in cache[/green] | "
        f"[yellow]{counts[CONFLICT]} conflicts[/yellow]"
    )


def ask_about_diff(diff, question, model, console=None):
    """Ask the reviewer model a question about the differences."""
    console = console or Console()
    diff_text = diff_to_text(diff)

    response = litellm.completion(
        model=model,
        messages=[
            {
                "role": "system",
                "content": (
                    "You are helping reconcile two copies of a company database: the shared file "
                    "and this device's cache. Answer the user's question about the differences concisely."
                ),
            },
            {
                "role": "user",
                "content": f"Here are the differences:\n\n{diff_text}\n\nQuestion: {question}",
            },
        ],
        stream=True,
    )

    console.print()
    for chunk in response:
        content = chunk.choices[0].delta.content
        if content:
            console.print(content, end="")
    console.print("\n")


def review_conflicts(diff, model=None, console=None, read=input):
    """Interactive conflict review.

    Returns a chooser {(collection, id): "file" | "cache"} covering every
    conflict, or None if the user quits (nothing is applied).
    """
    console = console or Console()
    display_diff(diff, console)

    pending = conflicts(diff)
    if not pending:
        return {}

    while True:
        console.print()
        console.print("[bold]  [F]ile wins  [C]ache wins  [N]ewest wins  [P]ick each  [Q]uit[/bold]")
        if model:
            console.print("[dim]  or ask a question about the differences[/dim]")
        try:
            choice = read("  > ").strip()
        except (KeyboardInterrupt, EOFError):
            return None

        if not choice:
            continue
        lowered = choice.lower()
        if lowered in ("f", "file"):
            return {(name, e.id): FILE for name, e in pending}
        if lowered in ("c", "cache"):
            return {(name, e.id): CACHE for name, e in pending}
        if lowered in ("n", "newest"):
            return {(name, e.id): e.suggested_winner for name, e in pending}
        if lowered in ("p", "pick"):
            return _pick_each(pending, console, read)
        if lowered in ("q", "quit", "exit"):
            return None

        if model:
            ask_about_diff(diff, choice, model, console)
        else:
            console.print("[dim]No reviewer model configured. Set \"reviewer\" in .hjxconfig.[/dim]")


def _pick_each(pending, console, read):
    picks = {}
    for name, e in pending:
        console.print(
            f"\n[bold yellow]{name}/{e.id}[/bold yellow] {e.label}  "
            f"[dim]file={_format_time(e.file_time)} cache={_format_time(e.cache_time)}[/dim]"
        )
        while True:
            try:
                answer = read(f"  file or cache? [{e.suggested_winner}] > ").strip().lower()
            except (KeyboardInterrupt, EOFError):
                return None
            if not answer:
                picks[(name, e.id)] = e.suggested_winner
                break
            if answer in ("f", "file"):
                picks[(name, e.id)] = FILE
                break
            if answer in ("c", "cache"):
                picks[(name, e.id)] = CACHE
                break
    return picks
