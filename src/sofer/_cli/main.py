import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from sofer._config import EngineConfig
from sofer._errors import ConfigError, FormatError, NotFoundError, SoferError, TemplateError
from sofer._eval_engine import EvaluationReport, Evaluator
from sofer._io import load_outline, save_outline
from sofer._node import NodeState
from sofer._outline import Outline
from sofer._session import rendered_text
from sofer._template import expand, load_templates

from .config import SoferConfig, get_config

app = typer.Typer()

logger = logging.getLogger(__name__)
# Console for stderr (info/errors)
err_console = Console(stderr=True)
# Console for stdout (results)
out_console = Console()


@app.callback()
def callback(
    *,
    verbose: bool = typer.Option(default=False, help="Enable verbose output"),
) -> None:
    """Sofer CLI."""
    log_level = logging.DEBUG if verbose else logging.INFO

    # Configure rich logging handler to output to stderr
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[
            RichHandler(
                console=err_console,
                show_time=False,
                show_path=verbose,
                rich_tracebacks=True,
            ),
        ],
    )


def _load_config() -> SoferConfig:
    try:
        return get_config()
    except ConfigError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e


def _resolve_path(value: Path | None, fallback: Path | None, what: str) -> Path:
    if value is not None:
        return value
    if fallback is not None:
        return fallback
    err_console.print(f"[red]✗ No {what} given and none configured in \\[tool.sofer][/red]")
    raise typer.Exit(code=1)


def _load(path: Path) -> Outline:
    err_console.print(f"[cyan]Loading outline from:[/cyan] {path}")
    try:
        outline = load_outline(path)
    except (FormatError, OSError) as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e
    err_console.print(f"[cyan]Nodes:[/cyan] [bold]{len(outline)}[/bold]")
    return outline


def _save(outline: Outline, path: Path, *, include_values: bool = False) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        save_outline(outline, path, include_values=include_values)
    except (SoferError, ValueError, OSError) as e:
        err_console.print(f"[red]✗ Could not write {path}: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e


def _engine_config(config: SoferConfig, step_limit: int | None = None, time_limit: float | None = None) -> EngineConfig:
    try:
        return config.engine_config(step_limit=step_limit, time_limit=time_limit)
    except ConfigError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e


def _state_style(state: NodeState) -> str:
    match state:
        case NodeState.CLEAN:
            return "green"
        case NodeState.DIRTY | NodeState.EVALUATING:
            return "yellow"
        case NodeState.CYCLE_ERROR | NodeState.SCRIPT_ERROR:
            return "red"


def render_outline(evaluator: Evaluator, console: Console) -> None:
    """Render the outline as a Rich tree of rendered texts."""
    outline = evaluator.outline
    tree = Tree("[bold]outline[/bold]")
    stack: list[tuple[Tree, str]] = [(tree, root_id) for root_id in reversed(outline.roots())]
    while stack:
        parent, node_id = stack.pop()
        node = outline.get(node_id)
        style = _state_style(node.state)
        label = escape(rendered_text(node)) or "[dim](empty)[/dim]"
        if node.state is not NodeState.CLEAN:
            label += f" [{style}]({node.state})[/{style}]"
        branch = parent.add(label)
        stack.extend((branch, child_id) for child_id in reversed(node.children))
    console.print(tree)


def render_errors(errors: dict[str, object], console: Console, title: str = "Errors") -> None:
    """Render per-node errors as a Rich table inside a panel."""
    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Node", style="dim")
    table.add_column("Error")
    for node_id, error in errors.items():
        table.add_row(node_id, f"[red]{escape(str(error))}[/red]")
    console.print(Panel(table, title=f"[bold]{title}[/bold]", border_style="red"))


def _print_report(report: EvaluationReport) -> None:
    if report.errors:
        render_errors(dict(report.errors), err_console)
    if report.mutation_errors:
        render_errors(
            {source: error for source, error in report.mutation_errors},
            err_console,
            title="Dropped mutations",
        )
    if report.mutation_limit is not None:
        dropped = ", ".join(report.mutation_limit.dropped)
        err_console.print(
            f"[yellow]⚠ Mutation round limit reached after {report.mutation_limit.rounds} round(s);"
            f" dropped requests from {escape(dropped)}[/yellow]",
        )


@app.command("eval")
def eval_(
    outline_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the outline (.toml or .sofer)"),
    ] = None,
    *,
    output: Annotated[
        Path | None,
        typer.Option("-o", "--output", help="Write the outline with computed values to this TOML file"),
    ] = None,
    step_limit: Annotated[
        int | None,
        typer.Option("--step-limit", help="Maximum interpreter steps per script"),
    ] = None,
    time_limit: Annotated[
        float | None,
        typer.Option("--time-limit", help="Wall-clock seconds per script"),
    ] = None,
    strict: Annotated[
        bool,
        typer.Option("--strict", help="Exit non-zero if any node ends in an error state"),
    ] = False,
) -> None:
    """Evaluate every script in an outline."""
    config = _load_config()
    path = _resolve_path(outline_path, config.outline, "outline")
    output = output if output is not None else config.output
    if output is not None and output.suffix != ".toml":
        err_console.print(f"[red]✗ Computed values can only be written to a .toml file, not {output}[/red]")
        raise typer.Exit(code=1)
    engine_config = _engine_config(config, step_limit, time_limit)

    err_console.print()
    evaluator = Evaluator(_load(path), config=engine_config)
    err_console.print()

    err_console.print("[cyan]Evaluating outline...[/cyan]")
    report = evaluator.evaluate()
    err_console.print()

    render_outline(evaluator, out_console)
    out_console.print()
    _print_report(report)

    if output is not None:
        err_console.print(f"[cyan]Exporting results to:[/cyan] {output}")
        _save(evaluator.outline, output, include_values=True)

    err_console.print()
    if report.success:
        err_console.print("[green]✓ Evaluation complete[/green]")
    else:
        err_console.print(f"[yellow]⚠ Evaluation finished with {len(report.errors)} node error(s)[/yellow]")
    err_console.print()

    if strict and not report.success:
        raise typer.Exit(code=1)


@app.command()
def check(
    outline_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the outline (.toml or .sofer)"),
    ] = None,
) -> None:
    """Parse every script and report errors and dependency cycles without running them."""
    config = _load_config()
    path = _resolve_path(outline_path, config.outline, "outline")

    err_console.print()
    evaluator = Evaluator(_load(path))
    err_console.print()

    err_console.print("[cyan]Validating scripts...[/cyan]")
    problems = evaluator.refresh_dependencies()
    cycles = evaluator.graph.find_cycles()
    err_console.print()

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Nodes", justify="right")
    table.add_column("Scripts", justify="right", style="yellow")
    table.add_column("Dependency edges", justify="right")
    scripts = sum(1 for node in evaluator.outline.walk() if evaluator.is_script(node.id))
    edges = sum(len(evaluator.graph.reads(node.id)) for node in evaluator.outline.walk())
    table.add_row(str(len(evaluator.outline)), str(scripts), str(edges))
    err_console.print(Panel(table, title=f"[bold]Outline: {escape(path.name)}[/bold]", border_style="cyan"))

    if problems:
        render_errors(dict(problems), err_console, title="Script errors")
    for cycle in cycles:
        err_console.print(f"[red]✗ Dependency cycle:[/red] {escape(' -> '.join(cycle))}")

    err_console.print()
    if problems or cycles:
        err_console.print("[red]✗ Outline has problems[/red]")
        err_console.print()
        raise typer.Exit(code=1)
    err_console.print("[green]✓ Outline is valid[/green]")
    err_console.print()


@app.command()
def deps(
    node_id: Annotated[
        str,
        typer.Argument(help="Id of the node to inspect"),
    ],
    outline_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the outline (.toml or .sofer)"),
    ] = None,
) -> None:
    """Show which nodes a node reads and which nodes read it."""
    config = _load_config()
    path = _resolve_path(outline_path, config.outline, "outline")
    evaluator = Evaluator(_load(path))
    evaluator.refresh_dependencies()
    try:
        node = evaluator.outline.get(node_id)
    except NotFoundError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    out_console.print(f"[bold]Node:[/bold] {node.id}")
    out_console.print(f"[cyan]Text:[/cyan]  {escape(node.text)}")
    out_console.print()
    for title, ids in (
        ("Reads", evaluator.graph.reads(node_id)),
        ("Dependents", evaluator.graph.dependents(node_id)),
    ):
        if ids:
            out_console.print(f"[cyan]{title} ({len(ids)} direct):[/cyan]")
            for other_id in sorted(ids):
                out_console.print(f"  {other_id}  [dim]{escape(evaluator.outline.get(other_id).text)}[/dim]")
        else:
            out_console.print(f"[cyan]{title}:[/cyan] [dim]None[/dim]")
        out_console.print()


@app.command("expand")
def expand_(
    template_id: Annotated[
        str,
        typer.Argument(help="Id of the template to expand"),
    ],
    outline_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the outline (.toml or .sofer)"),
    ] = None,
    *,
    templates_path: Annotated[
        Path | None,
        typer.Option("-t", "--templates", help="Path to the templates TOML file"),
    ] = None,
    output: Annotated[
        Path,
        typer.Option("-o", "--output", help="Where to write the expanded outline"),
    ],
    parent: Annotated[
        str | None,
        typer.Option("--parent", help="Parent node id (a new root when omitted)"),
    ] = None,
    position: Annotated[
        int | None,
        typer.Option("--position", help="Position among the parent's children"),
    ] = None,
) -> None:
    """Expand a template into an outline."""
    config = _load_config()
    path = _resolve_path(outline_path, config.outline, "outline")
    templates_path = _resolve_path(templates_path, config.templates, "templates file")
    err_console.print()
    outline = _load(path)
    try:
        registry = load_templates(templates_path)
        root_id = expand(outline, registry.get(template_id), parent, position)
    except (TemplateError, NotFoundError, OSError) as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    required = sorted(
        (node.id, key) for node in outline.walk(root_id) for key in node.required
    )
    for node_id, key in required:
        err_console.print(f"[yellow]⚠ Field '{escape(key)}' of {node_id} needs a value[/yellow]")

    _save(outline, output)
    out_console.print(root_id)
    err_console.print(f"[green]✓ Expanded '{escape(template_id)}' into {output}[/green]")
    err_console.print()


@app.command("eval-node")
def eval_node(
    node_id: Annotated[
        str,
        typer.Argument(help="Id of the node to evaluate"),
    ],
    outline_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the outline (.toml or .sofer)"),
    ] = None,
    *,
    step_limit: Annotated[
        int | None,
        typer.Option("--step-limit", help="Maximum interpreter steps per script"),
    ] = None,
    time_limit: Annotated[
        float | None,
        typer.Option("--time-limit", help="Wall-clock seconds per script"),
    ] = None,
) -> None:
    """Evaluate an outline and print the rendered text of one node."""
    config = _load_config()
    path = _resolve_path(outline_path, config.outline, "outline")
    engine_config = _engine_config(config, step_limit, time_limit)
    evaluator = Evaluator(_load(path), config=engine_config)
    try:
        node = evaluator.outline.get(node_id)
    except NotFoundError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    evaluator.evaluate()
    out_console.print(escape(rendered_text(node)))
    if node.error is not None:
        err_console.print(f"[red]✗ {escape(str(node.error))}[/red]")
        raise typer.Exit(code=1)


@app.command()
def insert(
    parent_id: Annotated[
        str,
        typer.Argument(help="Id of the parent node, or '-' for a new root"),
    ],
    text: Annotated[
        str,
        typer.Argument(help="Text of the new node"),
    ],
    outline_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the outline (.toml or .sofer)"),
    ] = None,
    *,
    output: Annotated[
        Path,
        typer.Option("-o", "--output", help="Where to write the updated outline"),
    ],
    position: Annotated[
        int | None,
        typer.Option("--position", help="Position among the parent's children"),
    ] = None,
) -> None:
    """Insert a new node into an outline."""
    config = _load_config()
    path = _resolve_path(outline_path, config.outline, "outline")
    outline = _load(path)
    try:
        node = outline.create_node(None if parent_id == "-" else parent_id, position, text=text)
    except NotFoundError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    _save(outline, output)
    out_console.print(node.id)
    err_console.print(f"[green]✓ Inserted {node.id} into {output}[/green]")


@app.command()
def convert(
    source: Annotated[
        Path,
        typer.Argument(help="Outline to read (.toml or .sofer)"),
    ],
    destination: Annotated[
        Path,
        typer.Argument(help="Outline to write (.toml or .sofer)"),
    ],
) -> None:
    """Convert an outline between the TOML and line formats."""
    try:
        outline = load_outline(source)
        destination.parent.mkdir(parents=True, exist_ok=True)
        save_outline(outline, destination)
    except (SoferError, ValueError, OSError) as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e
    err_console.print(f"[green]✓ Wrote {len(outline)} node(s) to {destination}[/green]")


if __name__ == "__main__":
    app()
