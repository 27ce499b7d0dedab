"""
CLI entry point for opawasm.

This module provides the Typer-based command-line interface for opawasm.

Commands:
    entrypoints  List the entrypoints of a bundle's policy module
    eval         Evaluate an entrypoint of a bundle
    inspect      Show the contents of a bundle

Architecture Note:
    The CLI only parses arguments and formats output; loading and evaluation
    go through Bundle, RuntimeBuilder and PolicyRuntime so the same logic is
    available programmatically.
"""

import json
import logging
import traceback
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from opawasm import __version__
from opawasm.bundle import Bundle
from opawasm.config import load_config
from opawasm.errors import OpaWasmError
from opawasm.log import setup_logging
from opawasm.wasm import RuntimeBuilder

# Initialize Typer app with metadata
app = typer.Typer(
    name="opawasm",
    help="Evaluate OPA policies compiled to WebAssembly.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]opawasm[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    opawasm - Run OPA WebAssembly policies in-process.

    Load bundles built with `opa build -t wasm` and evaluate their
    entrypoints without an OPA server.
    """
    pass


BundleArgument = Annotated[
    Path,
    typer.Argument(
        help="Path to the bundle (.tar.gz) built with `opa build -t wasm`.",
        exists=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
    ),
]

JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output in JSON format."),
]


# =============================================================================
# Commands
# =============================================================================


@app.command()
def entrypoints(
    bundle_path: BundleArgument,
    json_output: JsonOption = False,
) -> None:
    """
    List the entrypoints of a bundle's policy module.

    Example:
        $ opawasm entrypoints bundle.tar.gz
    """
    try:
        runtime = RuntimeBuilder().build_from_bundle(Bundle.from_file(bundle_path))
    except OpaWasmError as e:
        _fail(e, json_output)

    names = sorted(runtime.entrypoints())
    if json_output:
        output = {
            "abi_minor_version": runtime.abi_minor_version,
            "entrypoints": {name: runtime.entrypoint_id(name) for name in names},
        }
        print(json.dumps(output, indent=2))
        raise typer.Exit(code=0)

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim", width=4)
    table.add_column("Entrypoint", style="cyan")
    for name in names:
        table.add_row(str(runtime.entrypoint_id(name)), name)

    console.print(table)
    console.print(f"[dim]ABI minor version: {runtime.abi_minor_version}[/dim]")


@app.command("eval")
def eval_command(
    bundle_path: BundleArgument,
    entrypoint: Annotated[
        str,
        typer.Argument(help="Entrypoint to evaluate, e.g. example.allow or example/allow."),
    ],
    input_file: Annotated[
        Optional[Path],
        typer.Option(
            "--input",
            help="Path to a JSON file with the input document.",
            exists=True,
            dir_okay=False,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    input_json: Annotated[
        Optional[str],
        typer.Option(
            "--input-json",
            "-i",
            help="Input document as a JSON string.",
        ),
    ] = None,
    data_file: Annotated[
        Optional[Path],
        typer.Option(
            "--data",
            help="Path to a JSON data document. Defaults to the bundle's data.json.",
            exists=True,
            dir_okay=False,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to a runtime configuration YAML file.",
            exists=True,
            dir_okay=False,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    json_output: JsonOption = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug logging and full error tracebacks.",
        ),
    ] = False,
) -> None:
    """
    Evaluate an entrypoint of a bundle.

    The data document is taken from --data, else from the bundle's
    data.json, else it is empty.

    Example:
        $ opawasm eval bundle.tar.gz example.allow -i '{"user_id": "alice"}'
    """
    if debug:
        setup_logging(logging.DEBUG)

    if input_file is not None and input_json is not None:
        _fail_usage("Use either --input or --input-json, not both", json_output)

    try:
        input_value = _read_json_argument(input_file, input_json, "input")
        data_value = _read_json_argument(data_file, None, "data")
    except ValueError as e:
        _fail_usage(str(e), json_output)

    try:
        builder = RuntimeBuilder()
        if config_path is not None:
            config = load_config(config_path)
            setup_logging(logging.DEBUG if debug else config.log_level)
            builder = RuntimeBuilder.from_config(config)

        bundle = Bundle.from_file(bundle_path)
        runtime = builder.build_from_bundle(bundle)
        runtime.set_data(_select_data(data_value, bundle))
        result = runtime.eval(entrypoint, input_value)
    except OpaWasmError as e:
        _fail(e, json_output, debug)

    if json_output:
        print(json.dumps({"entrypoint": entrypoint, "result": result}, indent=2))
    else:
        print(json.dumps(result, indent=2))


@app.command()
def inspect(
    bundle_path: BundleArgument,
    json_output: JsonOption = False,
) -> None:
    """
    Show the manifest and contents of a bundle.

    Example:
        $ opawasm inspect bundle.tar.gz
    """
    try:
        bundle = Bundle.from_file(bundle_path)
    except OpaWasmError as e:
        _fail(e, json_output)

    manifest = bundle.manifest
    if json_output:
        output = {
            "revision": manifest.revision if manifest else None,
            "roots": manifest.roots if manifest else [],
            "wasm": [
                {
                    "entrypoint": policy.entrypoint,
                    "module": policy.module,
                    "size": len(policy.bytes),
                }
                for policy in bundle.wasm_policies
            ],
            "rego": sorted(bundle.rego_policies),
            "has_data": bundle.data is not None,
            "bundle_path": str(bundle_path),
        }
        print(json.dumps(output, indent=2))
        raise typer.Exit(code=0)

    console.print(f"[bold cyan]{escape(bundle_path.name)}[/bold cyan]")
    console.print()

    if manifest is None:
        console.print("[yellow]No manifest[/yellow]")
    else:
        console.print(f"[bold]Revision:[/bold] {escape(manifest.revision) or 'none'}")
        console.print(f"[bold]Roots:[/bold] {escape(', '.join(manifest.roots)) or 'none'}")
    console.print(f"[bold]Data:[/bold] {'yes' if bundle.data is not None else 'no'}")
    console.print()

    if bundle.wasm_policies:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Entrypoint", style="cyan")
        table.add_column("Module")
        table.add_column("Size", justify="right")
        for policy in bundle.wasm_policies:
            table.add_row(escape(policy.entrypoint), escape(policy.module), f"{len(policy.bytes)} B")
        console.print(table)
    else:
        console.print("[yellow]No WASM modules[/yellow]")

    if bundle.rego_policies:
        console.print()
        console.print("[bold]Rego files:[/bold]")
        for name in sorted(bundle.rego_policies):
            console.print(f"  {escape(name)}")


# =============================================================================
# Helpers
# =============================================================================


def _read_json_argument(path: Path | None, text: str | None, label: str) -> Any:
    """Parse a JSON document from a file or a string; None if neither is given."""
    if path is not None:
        text = path.read_text()
        source = str(path)
    elif text is not None:
        source = f"--{label}-json"
    else:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        msg = f"Invalid JSON {label} in {source}: {e}"
        raise ValueError(msg) from e


def _select_data(data_value: Any, bundle: Bundle) -> Any:
    """Data from --data, else the bundle's data.json, else an empty document."""
    if data_value is not None:
        return data_value
    if bundle.data is not None:
        return bundle.data
    return {}


def _fail(error: OpaWasmError, json_output: bool, debug: bool = False) -> NoReturn:
    """Report an opawasm error and exit with code 1."""
    if json_output:
        output: dict[str, Any] = {"error": True, **error.to_dict()}
        if debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2, default=str))
    else:
        console.print(f"[red]{escape(str(error))}[/red]")
        if debug:
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
    raise typer.Exit(code=1)


def _fail_usage(message: str, json_output: bool) -> NoReturn:
    """Report an invalid argument combination and exit with code 1."""
    if json_output:
        print(json.dumps({"error": True, "error_type": "usage_error", "message": message}, indent=2))
    else:
        console.print(f"[red]Error: {escape(message)}[/red]")
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
