import argparse
import sys
import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Fix Windows console encoding
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding='utf-8')
    sys.stderr.reconfigure(encoding='utf-8')

from config import CHECKBOX_MODES, DOCUMENT_TYPES, MappingConfig, get_default_config, get_model_by_name
from errors import MappingError
from oracle import OpenAIOracle
from pipeline import BatchItem, run_batch, run_data_batch


def _read_targets(target_paths: List[str]) -> List[Tuple[str, bytes]]:
    items = []
    for target_path in target_paths:
        path = Path(target_path)
        if not path.exists():
            raise FileNotFoundError(f"Document not found: {path}")
        items.append((path.name, path.read_bytes()))
    return items


def load_data_structure(source: str) -> Dict[str, Any]:
    """Data structure from a JSON file, or from the argument itself when it is inline JSON."""
    path = Path(source)
    text = path.read_text(encoding="utf-8") if path.exists() else source
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Data structure is neither a JSON file nor valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Data structure must be a JSON object")
    return data


def write_results(results: List[BatchItem], output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    for item in results:
        if not item.ok:
            print(f"✗ {item.name}: {item.error}", file=sys.stderr)
            continue
        report = item.result.report
        docx_path = output_dir / report.output_filename
        docx_path.write_bytes(item.output)
        report_path = docx_path.with_suffix(".json")
        with open(report_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(report.model_dump(exclude_none=True), indent=2, ensure_ascii=False))
        mark = "✓" if report.success else "✗"
        print(f"{mark} {item.name}: {report.tags_verified}/{report.tags_expected} tags, "
              f"satisfaction {report.satisfaction}% -> {docx_path}")


def process_documents(
    template_path: str,
    target_paths: List[str],
    output_dir: Path,
    config: MappingConfig,
    continue_on_failure: bool = False,
    verbose: bool = False,
    output_filename: Optional[str] = None,
) -> List[BatchItem]:

    template = Path(template_path)
    if not template.exists():
        raise FileNotFoundError(f"Template not found: {template}")
    items = _read_targets(target_paths)

    if verbose:
        print(f"[1/2] Template: {template} -> {len(items)} document(s)")
        print(f"      Model: {config.model.name}, checkboxes: {config.checkbox_mode}")

    results = run_batch(
        template.read_bytes(), items, OpenAIOracle(config), config,
        continue_on_failure=continue_on_failure,
        output_filename=output_filename,
    )

    if verbose:
        print(f"[2/2] Writing results to {output_dir}")
    write_results(results, output_dir)
    return results


def process_data_documents(
    data: Dict[str, Any],
    target_paths: List[str],
    output_dir: Path,
    config: MappingConfig,
    continue_on_failure: bool = False,
    verbose: bool = False,
    output_filename: Optional[str] = None,
) -> List[BatchItem]:
    items = _read_targets(target_paths)

    if verbose:
        print(f"[1/2] Data structure: {len(data)} top-level key(s) -> {len(items)} document(s)")
        print(f"      Model: {config.model.name}, document type: {config.document_type or '-'}")

    results = run_data_batch(
        data, items, OpenAIOracle(config), config,
        continue_on_failure=continue_on_failure,
        output_filename=output_filename,
    )

    if verbose:
        print(f"[2/2] Writing results to {output_dir}")
    write_results(results, output_dir)
    return results


def main():
    """Main entry point for CLI usage."""
    parser = argparse.ArgumentParser(
        description="Transfer {{TAG}} placeholders from a template .docx into blank documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py template.docx blank.docx
    python main.py template.docx a.docx b.docx -o out --continue-on-failure
    python main.py --data fields.json blank.docx --document-type DC1
        """
    )

    parser.add_argument(
        "documents",
        nargs="+",
        help="Reference .docx followed by the blank .docx document(s); only blank documents with --data"
    )
    parser.add_argument(
        "--data",
        default=None,
        help="JSON file (or inline JSON) whose field paths become the tags, instead of a reference document"
    )
    parser.add_argument(
        "-o", "--output-dir",
        default=None,
        help="Directory for the tagged documents and reports (default: the first target's folder)"
    )
    parser.add_argument(
        "--output-name",
        default=None,
        help="File name of the tagged document (single target only; default: <name>_TEMPLATE.docx)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Print intermediate processing steps"
    )
    parser.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Record a failing document and carry on with the next one"
    )
    parser.add_argument(
        "--include-trace", "--include-details",
        dest="include_trace",
        action="store_true",
        help="Add the action trace and per-placement details to each JSON report"
    )
    parser.add_argument("--checkbox-mode", choices=CHECKBOX_MODES, default=None)
    parser.add_argument("--document-type", choices=DOCUMENT_TYPES, default=None)
    parser.add_argument(
        "--confidence-threshold",
        type=float,
        default=None,
        help="Minimum oracle confidence, 0-100 (default: 70)"
    )
    parser.add_argument("--model", default=None, help="Model name (default: OPENAI_MODEL or gpt-5-mini)")

    args = parser.parse_args()

    if args.data is None and len(args.documents) < 2:
        parser.error("a reference document and at least one blank document are required")
    if args.confidence_threshold is not None and not 0 <= args.confidence_threshold <= 100:
        parser.error("--confidence-threshold must be between 0 and 100")

    config = get_default_config()
    overrides = {}
    if args.model:
        overrides["model"] = get_model_by_name(args.model)
    if args.checkbox_mode:
        overrides["checkbox_mode"] = args.checkbox_mode
    if args.include_trace:
        overrides["include_trace"] = True
    if args.document_type:
        overrides["document_type"] = args.document_type
    if args.confidence_threshold is not None:
        overrides["min_confidence"] = args.confidence_threshold / 100
    if overrides:
        config = replace(config, **overrides)

    targets = args.documents if args.data is not None else args.documents[1:]
    output_dir = Path(args.output_dir) if args.output_dir else Path(targets[0]).parent

    try:
        if args.data is not None:
            results = process_data_documents(
                load_data_structure(args.data), targets, output_dir, config,
                continue_on_failure=args.continue_on_failure,
                verbose=args.verbose,
                output_filename=args.output_name,
            )
        else:
            results = process_documents(
                args.documents[0], targets, output_dir, config,
                continue_on_failure=args.continue_on_failure,
                verbose=args.verbose,
                output_filename=args.output_name,
            )
        if not all(item.ok for item in results):
            sys.exit(1)

    except FileNotFoundError as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"✗ Validation Error: {e}", file=sys.stderr)
        sys.exit(1)
    except MappingError as e:
        print(f"✗ Mapping Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"✗ Unexpected Error: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
