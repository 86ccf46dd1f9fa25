"""
Text formatting utilities for patient context.

Converts patients, studies and reports into the text blocks embedded in
report-synthesis and chat prompts. Study ids are always included so the
model can cite them.
"""
import json
from typing import Optional, Sequence

from .models import Patient, ReportOutput, Study


def format_datetime(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "Unknown date"


def sort_studies(studies: Sequence[Study]) -> list[Study]:
    """Chronological order, oldest first."""
    return sorted(studies, key=lambda s: s.imaging_datetime)


def format_patient(patient: Patient) -> str:
    """Format patient demographics into readable text."""
    lines = [
        f"- Name: {patient.name}",
        f"- Age: {patient.age}",
        f"- Sex: {patient.sex}",
        f"- Reason for imaging: {patient.reason_for_imaging or 'Not specified'}",
    ]
    return "\n".join(lines)


def format_studies(studies: Sequence[Study]) -> str:
    """Format studies chronologically into readable text."""
    blocks = []
    for i, study in enumerate(sort_studies(studies), 1):
        blocks.append(
            f"{i}. [study_id: {study.id}] {study.title}\n"
            f"   Modality: {study.modality or 'Not specified'}\n"
            f"   Date: {format_datetime(study.imaging_datetime)}\n"
            f"   Summary: {study.series_summary}"
        )
    return "\n\n".join(blocks) if blocks else "No studies on record"


def format_report(report: Optional[ReportOutput], no_report_notice: str) -> str:
    """Format the latest report's three prose fields."""
    if report is None:
        return no_report_notice
    return (
        f"Findings:\n{report.findings}\n\n"
        f"Impression:\n{report.impression}\n\n"
        f"Next steps:\n{report.next_steps}"
    )


def report_data_block(patient: Patient, studies: Sequence[Study]) -> str:
    """Structured JSON block of patient demographics and studies."""
    data = {
        "patient_demo": {
            "name": patient.name,
            "age": patient.age,
            "sex": patient.sex,
            "reason": patient.reason_for_imaging or "Not specified",
        },
        "studies": [
            {
                "study_id": study.id,
                "title": study.title,
                "modality": study.modality or "Not specified",
                "date": study.imaging_datetime.isoformat(),
                "summary": study.series_summary,
            }
            for study in sort_studies(studies)
        ],
    }
    return json.dumps(data, indent=2)


def format_transcript(turns: Sequence[tuple[str, str]]) -> str:
    """Format (role, text) pairs into a plain transcript."""
    lines = []
    for role, text in turns:
        speaker = "User" if role == "user" else "Assistant"
        lines.append(f"{speaker}: {text}")
    return "\n".join(lines) if lines else "No messages"
