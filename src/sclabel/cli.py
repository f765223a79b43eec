"""sclabel Command Line Interface."""

import sys
from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sclabel import __version__

console = Console()

TABLE_READERS = {".csv": ",", ".tsv": "\t", ".txt": "\t"}


def _configure_logging(verbose: bool) -> None:
    """Route loguru to stderr at INFO, or DEBUG with --verbose."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _read_table(path: Path):
    """Read a CSV/TSV/parquet label table with polars."""
    import polars as pl

    suffix = path.suffix.lower()
    if suffix == ".parquet":
        return pl.read_parquet(path)
    if suffix in TABLE_READERS:
        return pl.read_csv(path, separator=TABLE_READERS[suffix], infer_schema_length=None)
    raise ValueError(f"Unsupported table format '{suffix}' (use .csv, .tsv or .parquet)")


def _write_table(df, path: Path) -> None:
    suffix = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".parquet":
        df.write_parquet(path)
    elif suffix in TABLE_READERS:
        df.write_csv(path, separator=TABLE_READERS[suffix])
    else:
        raise ValueError(f"Unsupported table format '{suffix}' (use .csv, .tsv or .parquet)")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def main(verbose: bool) -> None:
    """sclabel: scRNA-seq clustering and cluster-level label harmonization."""
    _configure_logging(verbose)


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Analysis configuration (JSON, see 'sclabel init-config')",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output directory (overrides output.output_dir)",
)
def run(config_path: Path, output: Path | None) -> None:
    """Run the full analysis pipeline.

    Loads the configured samples, runs QC, normalization, integration,
    clustering, marker detection and annotation, then harmonizes the
    predicted labels per cluster.
    """
    from pydantic import ValidationError

    from sclabel.config import AnalysisConfig
    from sclabel.pipeline import AnalysisPipeline

    try:
        config = AnalysisConfig.from_json(config_path)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration {config_path}:[/red]\n{escape(str(e))}")
        raise click.Abort()

    if output is not None:
        config.output.output_dir = str(output)
    if not config.samples:
        console.print("[red]Error: the configuration lists no samples[/red]")
        raise click.Abort()

    console.print(f"[bold blue]sclabel analysis: {config.name}[/bold blue]")
    console.print(f"Samples: {', '.join(s.sample_id for s in config.samples)}")
    console.print(f"Annotator: {config.annotation.annotator.value}")
    console.print(f"No-call policy: {config.harmonization.no_call_policy.value}")

    result = AnalysisPipeline(config).run()

    if result.summary is not None:
        table = Table(title="Harmonized clusters")
        table.add_column("Cluster", style="cyan", no_wrap=True)
        table.add_column("Label", style="green")
        table.add_column("Cells", justify="right")
        table.add_column("Purity", justify="right", style="yellow")
        for row in result.summary.iter_rows(named=True):
            table.add_row(
                row["cluster"],
                row["harmonized_label"],
                f"{row['n_cells']:,}",
                f"{row['purity']:.1%}",
            )
        console.print(table)

    for name, path in result.output_files.items():
        console.print(f"[dim]{name}: {path}[/dim]")
    console.print(f"\n[bold green]Done: {result.final.n_cells:,} cells[/bold green]")


@main.command()
@click.option(
    "--input",
    "-i",
    "input_path",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Table with one row per cell (.csv, .tsv or .parquet)",
)
@click.option("--cell-col", default="cell_id", show_default=True, help="Cell id column")
@click.option("--cluster-col", default="leiden", show_default=True, help="Cluster column")
@click.option(
    "--prediction-col",
    default="predicted_label",
    show_default=True,
    help="Per-cell prediction column (empty = no call)",
)
@click.option(
    "--no-call-policy",
    type=click.Choice(["compete", "abstain"]),
    default="compete",
    show_default=True,
    help="Whether no-call cells vote",
)
@click.option("--no-call", default="Unassigned", show_default=True, help="No-call label")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Write per-cell harmonized labels here",
)
def harmonize(
    input_path: Path,
    cell_col: str,
    cluster_col: str,
    prediction_col: str,
    no_call_policy: str,
    no_call: str,
    output: Path | None,
) -> None:
    """Assign each cluster the majority label of its cells."""
    import polars as pl

    from sclabel.harmonization import HarmonizationError, harmonize as run_harmonize

    try:
        df = _read_table(input_path)
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise click.Abort()

    missing = [c for c in (cell_col, cluster_col, prediction_col) if c not in df.columns]
    if missing:
        console.print(
            f"[red]Error: missing columns {escape(str(missing))} "
            f"(found {escape(str(df.columns))})[/red]"
        )
        raise click.Abort()

    cells = df.get_column(cell_col).cast(pl.Utf8).to_list()
    if len(set(cells)) != len(cells):
        console.print(f"[red]Error: duplicate cell ids in '{cell_col}'[/red]")
        raise click.Abort()

    predictions = dict(zip(cells, df.get_column(prediction_col).cast(pl.Utf8).to_list()))
    clusters = dict(zip(cells, df.get_column(cluster_col).to_list()))
    if any(c is None for c in clusters.values()):
        console.print(f"[red]Error: '{cluster_col}' has missing values[/red]")
        raise click.Abort()

    try:
        result = run_harmonize(predictions, clusters, no_call=no_call, policy=no_call_policy)
    except HarmonizationError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise click.Abort()

    table = Table(title=f"Cluster labels ({result.n_cells:,} cells, policy={no_call_policy})")
    table.add_column("Cluster", style="cyan", no_wrap=True)
    table.add_column("Label", style="green")
    for cluster in result.cluster_order:
        table.add_row(str(cluster), result.cluster_to_label[cluster])
    console.print(table)

    if output is not None:
        frame = result.to_frame().with_columns(
            pl.Series("predicted_label", [predictions[c] for c in cells])
        )
        try:
            _write_table(frame, output)
        except ValueError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            raise click.Abort()
        console.print(f"[green]Wrote {frame.height:,} cells to {output}[/green]")


@main.command()
@click.option(
    "--h5ad",
    "h5ad_path",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="AnnData file with clusters",
)
@click.option("--groupby", default="leiden", show_default=True, help="obs column to test")
@click.option("--top-n", default=10, show_default=True, type=int, help="Markers per group")
@click.option("--min-logfc", default=0.25, show_default=True, type=float)
@click.option("--max-pval-adj", default=0.05, show_default=True, type=float)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Write the filtered marker table here",
)
def markers(
    h5ad_path: Path,
    groupby: str,
    top_n: int,
    min_logfc: float,
    max_pval_adj: float,
    output: Path | None,
) -> None:
    """Show the top marker genes of each cluster.

    Uses the stored rank_genes_groups result when it was computed for
    --groupby, otherwise runs a Wilcoxon test.
    """
    import anndata as ad
    import scanpy as sc

    from sclabel.pipeline.steps import filter_markers, marker_table

    adata = ad.read_h5ad(h5ad_path)
    if groupby not in adata.obs.columns:
        console.print(f"[red]Error: '{groupby}' not found in obs[/red]")
        raise click.Abort()

    stored = adata.uns.get("rank_genes_groups", {}).get("params", {}).get("groupby")
    if stored != groupby:
        console.print(f"[yellow]Ranking genes per '{groupby}' (wilcoxon)...[/yellow]")
        sc.tl.rank_genes_groups(
            adata, groupby=groupby, method="wilcoxon", use_raw=adata.raw is not None
        )

    top = filter_markers(
        marker_table(adata),
        min_logfc=min_logfc,
        max_pval_adj=max_pval_adj,
        top_n=top_n,
    )

    table = Table(title=f"Top {top_n} markers per '{groupby}'")
    table.add_column("Group", style="cyan", no_wrap=True)
    table.add_column("Markers", style="white")
    for group, genes in top.group_by("group", maintain_order=True).agg("names").iter_rows():
        table.add_row(group, ", ".join(genes))
    console.print(table)

    if output is not None:
        _write_table(top, output)
        console.print(f"[green]Wrote {top.height:,} markers to {output}[/green]")


@main.command(name="list-annotators")
def list_annotators_cmd() -> None:
    """List registered cell type annotators."""
    from sclabel.pipeline import get_annotator_class, list_annotators

    table = Table(title="Annotators")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description", style="white")

    for name in list_annotators():
        doc = (get_annotator_class(name).__doc__ or "").strip().splitlines()
        table.add_row(name, doc[0] if doc else "")

    console.print(table)
    console.print("\n[dim]Set annotation.annotator in the configuration to choose one[/dim]")


@main.command(name="init-config")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("analysis.json"),
    show_default=True,
    help="Where to write the configuration",
)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file")
def init_config(output: Path, force: bool) -> None:
    """Write a default analysis configuration to edit."""
    from sclabel.config import AnalysisConfig, SampleConfig

    if output.exists() and not force:
        console.print(f"[red]Error: {output} exists (use --force to overwrite)[/red]")
        raise click.Abort()

    config = AnalysisConfig(
        samples=[SampleConfig(sample_id="S1", path="data/S1/filtered_feature_bc_matrix")],
    )
    config.to_json(output)
    console.print(f"[green]Wrote default configuration to {output}[/green]")


if __name__ == "__main__":
    main()
