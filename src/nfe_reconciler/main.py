"""Command line interface for the NF-e import reconciliation."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from .config import Settings
from .core.errors import ReconciliationError
from .core.models import CommitResult, StagedImport
from .core.serialization import to_jsonable
from .core.service import ReconciliationService
from .core.utils import dump_json


LOGGER = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def load_settings(config_path: str) -> Settings:
    path = Path(config_path)
    if not path.exists():
        LOGGER.info("Configuration %s not found, using defaults", path)
        settings = Settings()
        settings.ensure_folders()
        return settings
    return Settings.load(path)


def _read_json(path: str) -> dict:
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def print_staged(staged: StagedImport) -> None:
    resolution = staged.client_resolution
    stats = staged.stats
    print(f"Importação: {staged.id}")
    print(f"NF-e: {staged.invoice.header.number}")
    print(f"Cliente: {staged.invoice.buyer.legal_name} -> {resolution.action.value}")
    if resolution.customer:
        print(f"  encontrado: #{resolution.customer.id} {resolution.customer.name}")
    for conflict in resolution.conflicts:
        print(f"  possível: #{conflict.customer.id} {conflict.customer.name} ({conflict.reason})")
    print(
        f"Itens: {stats.total_items} | exatos: {stats.exact_matches} | bons: {stats.good_matches}"
        f" | revisar: {stats.needs_review} | sem correspondência: {stats.no_matches}"
    )
    for index, result in enumerate(staged.product_matches, start=1):
        best = result.best_match
        if best:
            print(f"  {index}. {result.item.description} -> #{best.variant_id} {best.technical_name} ({best.similarity:.0%})")
        else:
            suggestion = result.suggestions
            print(f"  {index}. {result.item.description} -> cadastrar em '{suggestion.suggested_category}'")


def print_commit(result: CommitResult) -> None:
    print("Importação concluída")
    print(f"Cliente: #{result.customer_id}{' (novo)' if result.created_customer else ''}")
    print(f"Certificados emitidos: {result.succeeded}")
    for error in result.errors:
        print(f"  item {error.line_index + 1} ({error.item_code}): {error.message}")


def command_stage(args: argparse.Namespace) -> None:
    settings = load_settings(args.config)
    service = ReconciliationService(settings)
    staged = service.stage(_read_json(args.invoice), tenant_id=args.tenant)
    print_staged(staged)
    if args.output:
        dump_json(Path(args.output), to_jsonable(staged))
        print(f"Revisão salva em {args.output}")


def command_commit(args: argparse.Namespace) -> None:
    settings = load_settings(args.config)
    service = ReconciliationService(settings)
    staged = service.stage(_read_json(args.invoice), tenant_id=args.tenant)
    decision = _read_json(args.decisions) if args.decisions else None
    service.decide(staged.id, decision)
    print_commit(service.commit(staged.id))


def command_catalog(args: argparse.Namespace) -> None:
    settings = load_settings(args.config)
    service = ReconciliationService(settings)
    count = service.reload_catalog()
    service.workspace.save()
    print(f"Catálogo carregado: {count} produtos")


def command_api(args: argparse.Namespace) -> None:
    from .api.server import create_app

    settings = load_settings(args.config)
    app = create_app(settings)
    import uvicorn

    uvicorn.run(app, host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NF-e Import Reconciliation")
    parser.add_argument("--config", default="config.yaml", help="Path to the configuration YAML file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    stage_parser = subparsers.add_parser("stage", help="Resolve and match an invoice for review")
    stage_parser.add_argument("invoice", help="Structured invoice JSON file")
    stage_parser.add_argument("--tenant", type=int, default=None)
    stage_parser.add_argument("--output", default=None, help="Write the staged review as JSON")
    stage_parser.set_defaults(func=command_stage)

    commit_parser = subparsers.add_parser("commit", help="Stage an invoice and issue its certificates")
    commit_parser.add_argument("invoice", help="Structured invoice JSON file")
    commit_parser.add_argument("--decisions", default=None, help="Decision JSON (defaults to the automatic pre-selection)")
    commit_parser.add_argument("--tenant", type=int, default=None)
    commit_parser.set_defaults(func=command_commit)

    catalog_parser = subparsers.add_parser("catalog", help="Reload the product catalogue into the workspace")
    catalog_parser.set_defaults(func=command_catalog)

    api_parser = subparsers.add_parser("api", help="Start the FastAPI server")
    api_parser.add_argument("--host", default="0.0.0.0")
    api_parser.add_argument("--port", type=int, default=8000)
    api_parser.set_defaults(func=command_api)

    return parser


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    try:
        args.func(args)
    except (ReconciliationError, ValueError) as exc:
        LOGGER.debug("Command failed", exc_info=True)
        print(f"Erro: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
