"""A Rich-powered console front-end for browsing stored courses."""

from __future__ import annotations

from typing import Iterable, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..services.storage import CourseRecord, CourseRepository
from .overview import (
    FLAG_LABELS,
    AssignmentOverview,
    CourseOverview,
    OverviewSnapshot,
    collect_overview,
)


class ModernUI:
    """Render the course overview using Rich widgets."""

    def __init__(self, repository: CourseRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    def run(self) -> None:
        snapshot = collect_overview(self._repository)
        console = self._console

        console.rule("[bold magenta]Course Manager Overview")

        if snapshot.course_count == 0:
            console.print(
                Panel(
                    "No courses have been created yet.\n"
                    "Use [bold]python run.py create-course[/bold] to add the first one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot.courses),
            title="Courses",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True, equal=True))
        console.print()
        console.print(
            Text("Tip: pass --style console for the plain layout.", style="dim"),
            justify="center",
        )

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    def _build_tree(self, courses: Iterable[CourseOverview]) -> Tree:
        tree = Tree("[bold cyan]Courses", guide_style="cyan")

        for course_overview in courses:
            course_node = tree.add(self._build_course_label(course_overview))
            if not course_overview.assignments:
                course_node.add("[dim]No assignments yet")
                continue
            for assignment_overview in course_overview.assignments:
                course_node.add(self._build_assignment_label(assignment_overview))

        return tree

    @staticmethod
    def _build_course_label(overview: CourseOverview) -> Text:
        record: CourseRecord = overview.record
        label = Text(record.name, style="bold")
        label.append(f"  {record.display_name}", style="bright_cyan")
        label.append(f"\n{overview.student_count} student(s)", style="dim")
        if record.is_hidden:
            label.append(" · hidden", style="yellow")
        return label

    @staticmethod
    def _build_assignment_label(overview: AssignmentOverview) -> Text:
        record = overview.record
        label = Text(record.short_identifier, style="white")
        if record.due_date is not None:
            label.append(f"  due {record.due_date:%Y-%m-%d %H:%M %Z}", style="dim")
        if overview.flags:
            label.append("  ")
            label.append(" · ".join(overview.flags), style="green")
        return label

    def _build_stats_panel(self, snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Courses", str(snapshot.course_count))
        metrics.add_row("Assignments", str(snapshot.assignment_count))
        metrics.add_row("Students", str(snapshot.student_count))

        flag_table = Table.grid(expand=True, padding=(0, 1))
        flag_table.add_column(style="dim")
        flag_table.add_column(justify="right", style="bold")
        for key, label in FLAG_LABELS.items():
            flag_table.add_row(label, str(snapshot.flag_totals.get(key, 0)))

        body = Group(metrics, Rule(style="magenta"), flag_table)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["ModernUI"]
