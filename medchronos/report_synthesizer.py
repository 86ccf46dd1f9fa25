"""
Longitudinal report synthesis.

One blocking call to the general model per report: the prompt embeds the
citation grammar, the patient's studies in chronological order with their
ids, and the exact JSON schema to return. The response is parsed
permissively but the three prose fields are mandatory; there is no silent
fallback, since a substitute report would be fabricated clinical content.
"""
import asyncio
import json
from typing import Any, Optional, Sequence

from .citations import build_citation_map, citation_instructions, cited_ids
from .errors import InvalidInputError, TransientProviderError, UnparseableReportError
from .formatters import report_data_block, sort_studies
from .json_utils import JSONExtractionError, extract_json
from .models import Patient, ReportOutput, Study
from .prompts import REPORT_PROMPT, REPORT_SYSTEM_INSTRUCTION
from .providers import InferenceProvider
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

DEFAULT_REPORT_TIMEOUT = 300.0
MANDATORY_FIELDS = ("findings", "impression", "next_steps")
CODE_FIELDS = ("icd10_codes", "snomed_codes")


def report_schema(include_codes: bool) -> str:
    schema = {
        "findings": "Detailed description of all relevant findings across all studies, noting any changes over time, with [CITE:<study_id>] tokens",
        "impression": "Concise summary of the most important findings and their clinical significance, with [CITE:<study_id>] tokens",
        "next_steps": "Recommended follow-up actions, additional imaging, or clinical interventions",
    }
    if include_codes:
        schema["icd10_codes"] = ["Array of relevant ICD-10 diagnosis codes"]
        schema["snomed_codes"] = ["Array of relevant SNOMED CT codes"]
    return json.dumps(schema, indent=2)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(str(item) for item in value)
    return str(value)


def _as_code_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [code.strip() for code in value.split(",") if code.strip()]
    if isinstance(value, list):
        return [str(code).strip() for code in value if str(code).strip()]
    return [str(value)]


def parse_report(text: str, include_codes: bool = False) -> ReportOutput:
    """Parse a synthesis response into a ReportOutput.

    Raises:
        UnparseableReportError: no JSON object, or a mandatory field is
            missing or empty
    """
    try:
        data = extract_json(text)
    except JSONExtractionError as e:
        raise UnparseableReportError(f"Failed to parse report data: {e}", raw_text=text) from e

    missing = [name for name in MANDATORY_FIELDS if not data.get(name)]
    if missing:
        raise UnparseableReportError(
            f"Invalid report structure, missing: {', '.join(missing)}",
            raw_text=text,
        )

    findings, impression, next_steps = (_as_text(data[name]) for name in MANDATORY_FIELDS)
    output = ReportOutput(
        findings=findings,
        impression=impression,
        next_steps=next_steps,
        citations=build_citation_map(findings, impression, next_steps),
    )
    if include_codes:
        output.icd10_codes = _as_code_list(data.get("icd10_codes"))
        output.snomed_codes = _as_code_list(data.get("snomed_codes"))
    return output


class ReportSynthesizer:
    """Builds the report prompt, calls the general model, parses the result."""

    def __init__(
        self,
        general: InferenceProvider,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = DEFAULT_REPORT_TIMEOUT,
    ):
        self.general = general
        self.retry_policy = retry_policy
        self.timeout = timeout

    def build_prompt(self, patient: Patient, studies: Sequence[Study], include_codes: bool = False) -> str:
        return REPORT_PROMPT.format(
            citation_instructions=citation_instructions(),
            data_block=report_data_block(patient, studies),
            schema=report_schema(include_codes),
        )

    async def _generate(self, prompt: str) -> str:
        try:
            return await asyncio.wait_for(
                self.general.generate_free_text(
                    prompt,
                    system_instruction=REPORT_SYSTEM_INSTRUCTION,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                self.general.name, f"report synthesis timed out after {self.timeout}s"
            ) from e

    async def synthesize(
        self,
        patient: Patient,
        studies: Sequence[Study],
        include_codes: bool = False,
    ) -> ReportOutput:
        """Generate a holistic report across all of a patient's studies.

        Raises:
            InvalidInputError: the patient has no studies
            UnparseableReportError: the response lacks the mandatory fields
            ProviderError: the provider failed after the retry budget
        """
        if not studies:
            raise InvalidInputError("Cannot generate a report for a patient with no studies")

        ordered = sort_studies(studies)
        prompt = self.build_prompt(patient, ordered, include_codes)
        logger.info(
            "Synthesizing report",
            patient_id=patient.id,
            study_count=len(ordered),
            include_codes=include_codes,
        )

        text = await self.retry_policy.run(lambda: self._generate(prompt), label="report_synthesis")
        output = parse_report(text, include_codes)

        known = {study.id for study in ordered}
        unknown = [
            study_id
            for study_id in cited_ids(output.findings, output.impression, output.next_steps)
            if study_id not in known
        ]
        if unknown:
            logger.warning(
                "Report cites unknown study ids",
                patient_id=patient.id,
                unknown_ids=unknown,
            )

        logger.info(
            "Report synthesized",
            patient_id=patient.id,
            citation_count=len(output.citations),
        )
        return output

    async def synthesize_single_study(
        self,
        patient: Patient,
        study: Study,
        include_codes: Optional[bool] = None,
    ) -> ReportOutput:
        if include_codes is None:
            include_codes = study.include_codes
        return await self.synthesize(patient, [study], include_codes)
