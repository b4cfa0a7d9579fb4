#!/usr/bin/env python3
"""
Clinical Extraction Core - Demo CLI

Runs the full extraction pipeline over one or more progress notes and
prints the structured record: entities, timeline, treatment responses,
functional trajectory, quality report and refinement hints.

Usage:
    python demo_cli.py --sample                     # Built-in three-note SAH stay
    python demo_cli.py --file day1.txt --file day3.txt
    python demo_cli.py --sample --json              # Machine-readable output
    python demo_cli.py --sample --no-llm            # Pattern extraction only
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from clinex.core.config import settings
from clinex.core.logging_config import configure_logging
from clinex.schemas.base import EntityType
from clinex.schemas.entities import ClinicalDocument
from clinex.schemas.session import ExtractionSession, RefinementHints, UsageReport
from clinex.services.external_extractor import ExternalExtractor
from clinex.services.pipeline import ExtractionPipeline, get_extraction_pipeline
from clinex.services.refinement import build_refinement_hints

# ============================================================================
# Sample Notes
# ============================================================================

SAMPLE_NOTES = [
    """
HISTORY OF PRESENT ILLNESS:
55-year-old female presented with sudden onset worst headache of life.
CT head showed diffuse subarachnoid hemorrhage in the basal cisterns.
CTA revealed a 7 mm anterior communicating artery aneurysm.
Hunt-Hess grade 3, Fisher 3. GCS 13 on arrival.
Admission date: 2025-01-14.

HOSPITAL COURSE:
She underwent endovascular coiling on 2025-01-14 without complication.
Started nimodipine 60 mg q4h. Started levetiracetam 500 mg BID.
""",
    """
PROGRESS NOTE:
55-year-old female with aneurysmal subarachnoid hemorrhage s/p coiling.
Hunt-Hess grade 3, Fisher 3.
POD2 (2025-01-16): new confusion and right arm drift, concerning for vasospasm.
Started hypertensive therapy with norepinephrine.
No evidence of hydrocephalus. GCS 12.
Neurosurgery following closely.
""",
    """
DISCHARGE SUMMARY:
55-year-old female with aneurysmal subarachnoid hemorrhage s/p coiling.
POD 7: vasospasm resolved, neurologically improved. GCS 15. mRS 2.
No evidence of seizure during the admission.
Discharge date: 2025-01-24.
Disposition: discharged to acute rehab.
""",
]

# ============================================================================
# Display Functions
# ============================================================================


class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    END = '\033[0m'
    GRAY = '\033[90m'


def print_header(text: str, char: str = "="):
    """Print a formatted header."""
    width = 80
    print()
    print(f"{Colors.BOLD}{Colors.CYAN}{char * width}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.CYAN}{text.center(width)}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.CYAN}{char * width}{Colors.END}")


def print_subheader(text: str):
    """Print a formatted subheader."""
    print()
    print(f"{Colors.BOLD}{Colors.YELLOW}{'─' * 80}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.YELLOW}  {text}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.YELLOW}{'─' * 80}{Colors.END}")


def print_item(label: str, value: str, indent: int = 2):
    """Print a labeled item."""
    spaces = " " * indent
    print(f"{spaces}{Colors.GRAY}{label}:{Colors.END} {value}")


def print_success(text: str):
    print(f"  {Colors.GREEN}✓{Colors.END} {text}")


def print_warning(text: str):
    print(f"  {Colors.YELLOW}!{Colors.END} {text}")


def display_session(session: ExtractionSession, usage: UsageReport, hints: RefinementHints):
    """Display a session in formatted sections."""
    print_subheader("SUMMARY")
    print_item("Documents", f"{session.documents_accepted}/{session.documents_received} accepted")
    stats = session.deduplication
    print_item(
        "Sentences",
        f"{stats.kept_sentences}/{stats.original_sentences} kept "
        f"({stats.reduction_ratio:.0%} removed in {stats.clusters} clusters)",
    )
    primary = session.pathology.primary
    print_item("Pathology", primary.value if primary else "none detected")
    print_item("External extractor", session.external_status.value)
    print_item("Overall confidence", f"{session.overall_confidence:.2f}")
    print_item("Total time", f"{session.stage_timings_ms.get('total', 0.0):.1f} ms")
    for warning in session.warnings:
        print_warning(warning)

    print_subheader("ENTITIES")
    for entity_type in EntityType:
        entities = session.entities_of(entity_type)
        if not entities:
            continue
        print(f"  {Colors.BOLD}{entity_type.value}{Colors.END}")
        for entity in entities:
            date_text = entity.resolved_date.isoformat() if entity.resolved_date else "undated"
            subtype = f" {Colors.BLUE}[{entity.subtype.category} {entity.subtype.value}]{Colors.END}" if entity.subtype else ""
            conflict = f" {Colors.RED}(alternatives: {[a.value for a in entity.alternatives]}){Colors.END}" if entity.has_conflict else ""
            print(
                f"    {str(entity.value):35s} {Colors.GRAY}{date_text:10s} "
                f"{entity.source_method.value:7s} {entity.confidence:.2f}{Colors.END}{subtype}{conflict}"
            )

    print_subheader("TIMELINE")
    for event in session.timeline.events:
        marker = f"{Colors.GREEN}★{Colors.END}" if event.is_milestone else " "
        print(f"  {marker} {event.date.isoformat()}  {event.event_type.value:12s} {event.description}")
    if session.timeline.relationships:
        print()
        for rel in session.timeline.relationships:
            print(
                f"    {rel.source_event_id} {Colors.CYAN}--{rel.relation_type.value}-->{Colors.END} "
                f"{rel.target_event_id}  ({rel.confidence:.2f}, {rel.days_between}d)"
            )

    if session.treatment_responses:
        print_subheader("TREATMENT RESPONSES")
        for response in session.treatment_responses:
            print(
                f"  {response.intervention:30s} {response.response_quality.value:10s} "
                f"{response.effectiveness:3d}/100  {Colors.GRAY}{response.outcome_description}{Colors.END}"
            )

    trajectory = session.functional_trajectory
    print_subheader("FUNCTIONAL TRAJECTORY")
    print_item("Label", trajectory.label.value)
    print_item("Summary", trajectory.description)
    if trajectory.prognosis is not None:
        prognosis = trajectory.prognosis
        print_item(
            "Prognosis",
            f"{prognosis.category} {prognosis.grade}: final {prognosis.final_status:.2f} "
            f"vs expected {prognosis.expected_good_outcome:.2f}",
        )
    for point in trajectory.points:
        recorded = point.recorded_on.isoformat() if point.recorded_on else "undated"
        print(f"    {point.scale.value.upper():5s} {point.raw_value:4d}  -> {point.normalized:.2f}  {recorded}")

    report = session.quality_report
    if report is not None:
        print_subheader("QUALITY")
        for name, value in report.dimensions.items():
            print_item(name, f"{value:.2f}", indent=4)
        print_item("Overall", f"{report.overall:.2f} ({report.grade.value})")
        for issue in report.issues:
            print_warning(f"{issue.issue_type.value}: {issue.message}")

    print_subheader("REFINEMENT")
    if hints.should_refine:
        print_warning(f"Re-extraction suggested (weak: {', '.join(hints.weak_dimensions) or 'none'})")
        for line in hints.feedback:
            print(f"    - {line}")
    else:
        print_success("No refinement needed")

    if usage.llm_calls:
        print_subheader("USAGE")
        print_item("Tokens", f"{usage.total_tokens} ({usage.prompt_tokens} prompt)")
        print_item("Estimated cost", f"${usage.estimated_cost_usd:.4f}")
        print_item("Latency", f"{usage.llm_latency_ms:.0f} ms")


# ============================================================================
# Main Entry Point
# ============================================================================


async def run(notes: list[str], use_llm: bool) -> tuple[ExtractionSession, UsageReport]:
    """Run one session over the given notes."""
    if use_llm:
        pipeline = get_extraction_pipeline()
    else:
        pipeline = ExtractionPipeline(external_extractor=ExternalExtractor(client=None))
    documents = [ClinicalDocument(text=note, source_index=i) for i, note in enumerate(notes)]
    return await pipeline.run(documents)


def main():
    parser = argparse.ArgumentParser(
        description="Clinical Extraction Core - Demo CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python demo_cli.py --sample                       # Analyze the sample stay
  python demo_cli.py --file a.txt --file b.txt      # Analyze notes in order
  python demo_cli.py --sample --json                # JSON output
""",
    )
    parser.add_argument('--file', '-f', action='append', default=[], help='Path to a note file (repeatable)')
    parser.add_argument('--sample', '-s', action='store_true', help='Use the sample notes')
    parser.add_argument('--json', action='store_true', help='Print the session as JSON')
    parser.add_argument('--no-llm', action='store_true', help='Skip the external extractor')

    args = parser.parse_args()
    configure_logging("WARNING" if args.json else settings.log_level)

    notes: list[str] = []
    if args.sample:
        notes.extend(SAMPLE_NOTES)
    for name in args.file:
        path = Path(name)
        if not path.exists():
            print(f"Error: File not found: {name}")
            sys.exit(1)
        notes.append(path.read_text(encoding="utf-8"))
    if not notes:
        parser.print_help()
        sys.exit(1)

    session, usage = asyncio.run(run(notes, use_llm=not args.no_llm))
    hints = build_refinement_hints(session)

    if args.json:
        print(json.dumps(
            {
                "session": session.model_dump(mode="json"),
                "usage": usage.model_dump(mode="json"),
                "refinement": hints.model_dump(mode="json"),
            },
            indent=2,
        ))
        return

    print_header(f"ANALYZING {len(notes)} NOTE{'S' if len(notes) != 1 else ''}")
    display_session(session, usage, hints)


if __name__ == "__main__":
    main()
