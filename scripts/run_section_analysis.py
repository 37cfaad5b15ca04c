from __future__ import annotations

# ruff: noqa: E402
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from normcheck.coefficients import CoefficientTable
from normcheck.coordinator import AnalysisCoordinator
from normcheck.ingestion import parse_coefficients, parse_norm_curves, parse_observation_rows
from normcheck.models import AnalysisRequest


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analyze one section's consumption against its norm curves from JSON batches."
    )
    parser.add_argument("--curves", required=True, help="JSON array of norm curves")
    parser.add_argument("--observations", required=True, help="JSON array of observation rows")
    parser.add_argument("--section", required=True)
    parser.add_argument("--norm-id", default=None)
    parser.add_argument("--single-section", action="store_true")
    parser.add_argument("--coefficients", default=None, help="JSON array of locomotive coefficients")
    parser.add_argument("--min-work-threshold", type=float, default=0.0)
    parser.add_argument("--apply-coefficients", action="store_true")
    parser.add_argument("--out-file", default=None)
    return parser


def load_json_array(path: str) -> list[Any]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"{path}: JSON payload must be an array")
    return payload


def run_analysis(
    *,
    curves: list[Any],
    observations: list[Any],
    section: str,
    norm_id: str | None = None,
    single_section: bool = False,
    coefficients: list[Any] | None = None,
    min_work_threshold: float = 0.0,
    apply_coefficients: bool = False,
) -> dict[str, Any]:
    coordinator = AnalysisCoordinator()

    curve_batch = parse_norm_curves(curves)
    row_batch = parse_observation_rows(observations)
    coordinator.ingest_curves(curve_batch.items)
    summary = coordinator.ingest_observations(row_batch.items)

    rejected: dict[str, list[dict[str, Any]]] = {
        "curves": [r.as_dict() for r in curve_batch.rejected],
        "observations": [r.as_dict() for r in row_batch.rejected],
    }
    if coefficients is not None:
        coefficient_batch = parse_coefficients(coefficients)
        coordinator.set_coefficients(
            CoefficientTable(coefficient_batch.items, min_work_threshold=min_work_threshold)
        )
        rejected["coefficients"] = [r.as_dict() for r in coefficient_batch.rejected]

    result = coordinator.analyze(
        AnalysisRequest(
            segment_name=section,
            norm_id=norm_id,
            single_section_only=single_section,
            apply_coefficients=apply_coefficients,
        )
    )
    return {
        "ingestion": summary.as_dict(),
        "rejected": rejected,
        "result": result.as_dict(),
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    report = run_analysis(
        curves=load_json_array(args.curves),
        observations=load_json_array(args.observations),
        section=args.section,
        norm_id=args.norm_id,
        single_section=args.single_section,
        coefficients=load_json_array(args.coefficients) if args.coefficients else None,
        min_work_threshold=args.min_work_threshold,
        apply_coefficients=args.apply_coefficients,
    )

    text = json.dumps(report, indent=2, ensure_ascii=False)
    if args.out_file:
        out = Path(args.out_file)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text, encoding="utf-8")
    print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
