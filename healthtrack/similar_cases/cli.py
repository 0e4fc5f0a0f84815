"""Command-line tools for building the case index and querying it."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import Paths, RetrievalConfig, apply_overrides
from .core.embeddings import build_embedding_provider
from .core.index import CaseIndex
from .core.models import FilterSortParams, Query
from .errors import SimilarCasesError
from .session import build_cache_store, build_case_index, build_retriever
from .utils.runtime import setup_logging

app = typer.Typer(help="HealthTrack similar-case retrieval")
console = Console()


@app.callback()
def _main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    setup_logging(logging.DEBUG if verbose else logging.INFO)


def _load_cfg(cfg_path: Optional[Path]) -> RetrievalConfig:
    cfg = RetrievalConfig()
    if cfg_path is not None:
        try:
            overrides = json.loads(cfg_path.read_text(encoding="utf-8"))
            apply_overrides(cfg, overrides)
        except (OSError, ValueError) as exc:
            raise typer.BadParameter(f"cannot apply {cfg_path}: {exc}") from exc
    return cfg


def _fail(exc: SimilarCasesError) -> None:
    console.print(f"[red]{exc.public_message}[/red] {exc}")
    for problem in exc.details:
        console.print(f"  - {problem.get('path')}: {problem.get('message')}")
    raise typer.Exit(code=1)


@app.command("build-index")
def build_index(
    corpus: Path = typer.Argument(..., help="Corpus table (csv/tsv/parquet/jsonl/json)"),
    workdir: Path = typer.Option(Path(".healthtrack"), help="Working directory for index and cache"),
    index_dir: Optional[Path] = typer.Option(None, help="Override index directory"),
    cfg: Optional[Path] = typer.Option(None, "--cfg", help="JSON config overrides"),
) -> None:
    """Embed cases lacking vectors, build the index and persist it."""
    config = _load_cfg(cfg)
    paths = Paths(str(workdir), str(index_dir) if index_dir else None)
    try:
        provider = build_embedding_provider(config.embedding)
        index = build_case_index(str(corpus), paths, config, provider=provider)
    except SimilarCasesError as exc:
        _fail(exc)
        return
    console.print(
        f"Indexed {len(index)} cases (dim={index.dim}, rejected={len(index.rejected_ids)}) into {paths.index_dir}"
    )


@app.command()
def search(
    note: str = typer.Argument(..., help="Clinical note text"),
    age: Optional[int] = typer.Option(None),
    sex: Optional[str] = typer.Option(None, help="Sex of the queried patient"),
    bp: Optional[str] = typer.Option(None),
    hr: Optional[int] = typer.Option(None),
    rr: Optional[int] = typer.Option(None),
    spo2: Optional[int] = typer.Option(None),
    temp: Optional[float] = typer.Option(None),
    min_age: Optional[float] = typer.Option(None),
    max_age: Optional[float] = typer.Option(None),
    sex_filter: Optional[str] = typer.Option(None, help="Only return cases of this sex"),
    icd: Optional[List[str]] = typer.Option(None, help="ICD code filter (repeatable)"),
    min_confidence: Optional[float] = typer.Option(None),
    sort_by: str = typer.Option("similarity"),
    sort_order: str = typer.Option("desc"),
    limit: Optional[int] = typer.Option(None),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
    workdir: Path = typer.Option(Path(".healthtrack")),
    index_dir: Optional[Path] = typer.Option(None),
    cfg: Optional[Path] = typer.Option(None, "--cfg", help="JSON config overrides"),
) -> None:
    """Find cases similar to one note."""
    config = _load_cfg(cfg)
    paths = Paths(str(workdir), str(index_dir) if index_dir else None)
    payload = {
        "note": note,
        "age": age,
        "sex": sex,
        "vitals": {"bp": bp, "hr": hr, "rr": rr, "spo2": spo2, "temp": temp},
        "filters": {
            "minAge": min_age,
            "maxAge": max_age,
            "sex": sex_filter,
            "icdCodes": list(icd) if icd else None,
            "minConfidence": min_confidence,
            "sortBy": sort_by,
            "sortOrder": sort_order,
        },
    }
    try:
        query = Query.from_payload(payload)
        filters = FilterSortParams.from_payload(payload["filters"])
        retriever = build_retriever(config, paths)
        if limit is not None:
            results = retriever.find_similar_cases(query, filters, limit=limit)
        else:
            results = retriever.find_similar_cases(query, filters)
    except SimilarCasesError as exc:
        _fail(exc)
        return

    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in results], ensure_ascii=False, indent=2))
        return
    if not results:
        console.print("No similar cases found.")
        return
    table = Table(title=f"Similar cases ({len(results)})")
    table.add_column("Case")
    table.add_column("Similarity", justify="right")
    table.add_column("Age", justify="right")
    table.add_column("Sex")
    table.add_column("ICD")
    table.add_column("Note")
    for r in results:
        table.add_row(
            r.case_id,
            f"{r.similarity:.3f}",
            "" if r.age is None else str(r.age),
            r.sex or "",
            ", ".join(r.icd_codes),
            (r.note[:60] + "...") if len(r.note) > 60 else r.note,
        )
    console.print(table)


@app.command()
def case(
    case_id: str = typer.Argument(...),
    workdir: Path = typer.Option(Path(".healthtrack")),
    index_dir: Optional[Path] = typer.Option(None),
    cfg: Optional[Path] = typer.Option(None, "--cfg"),
) -> None:
    """Show one stored case."""
    config = _load_cfg(cfg)
    paths = Paths(str(workdir), str(index_dir) if index_dir else None)
    try:
        index = CaseIndex.load(paths.index_dir, config.index)
    except SimilarCasesError as exc:
        _fail(exc)
        return
    details = index.get_case(case_id)
    if details is None:
        console.print(f"[red]Case not found:[/red] {case_id}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(details, ensure_ascii=False, indent=2))


@app.command("purge-cache")
def purge_cache(
    workdir: Path = typer.Option(Path(".healthtrack")),
    cfg: Optional[Path] = typer.Option(None, "--cfg"),
) -> None:
    """Delete expired cache entries."""
    config = _load_cfg(cfg)
    paths = Paths(str(workdir))
    try:
        store = build_cache_store(config.cache, paths)
        removed = store.purge_expired() if store is not None else 0
    except SimilarCasesError as exc:
        _fail(exc)
        return
    console.print(f"Purged {removed} expired entries")


if __name__ == "__main__":
    app()
