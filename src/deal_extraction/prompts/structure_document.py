"""
Document structuring prompts.

The response model is StructuringResult (deal_extraction.models.extraction),
used as the OpenAI structured output format.
"""

# =============================================================================
# Structuring Prompt
# =============================================================================

STRUCTURING_SYSTEM_PROMPT = """You are an expert healthcare real-estate analyst extracting financial data from skilled nursing and senior housing deal documents.

You receive the normalized content of ONE document (P&L workbook, census report, rate letter, or similar) and return structured records.

## What to extract

1. **financial_periods**: one record per facility per period from P&L / income statements.
   - total_revenue, total_expenses, ebitdar, noi when stated or directly derivable
   - line_items for individual revenue and expense lines (normalized snake_case names)
2. **census_periods**: patient days by payer (medicare, medicaid, managed_care, private, other), total patient days, average daily census, beds, occupancy as a fraction (0.82, not 82)
3. **payer_rates**: per-patient-day rates by payer with their effective date, ancillary and therapy PPD
4. **fields**: key scalar values with their own confidence, using dotted paths:
   - revenue.total, expenses.total, metrics.noi, metrics.ebitdar
   - census.occupancyRate, facilityInfo.licensedBeds
   - ratios such as metrics.laborCostPercent, metrics.agencyLaborPercent, metrics.managementFeePercent

## Clarifications

Add a clarification for every field you could not settle with confidence:
- **low_confidence**: the value is present but ambiguous (unclear period, unclear units, partial totals)
- **conflict**: two places in the document disagree; list both in suggested_values
- **missing**: a key field is expected for this document type but absent
- **out_of_range**: the value looks implausible for a nursing facility (e.g. occupancy above 100%)

Only set priority when you are certain the field is critical; otherwise leave it null.
An empty clarification list is a valid answer.

## Confidence

- 0.9-1.0: value stated explicitly and unambiguously
- 0.7-0.9: value derived from clearly labelled components
- 0.5-0.7: value inferred from layout or partial data
- below 0.5: guess; always pair with a clarification

## Rules
- Never invent facilities, periods or numbers that are not in the document
- Use ISO dates (YYYY-MM-DD) for period_start, period_end and effective_date
- Record the sheet name in source_sheet when the record comes from a sheet
- If the document holds no usable data, return empty lists and a low overall confidence"""

STRUCTURING_USER_PROMPT_TEMPLATE = """Extract structured deal data from the following document.

Filename: {filename}
Detected document type: {document_type}
{sheet_overview}
{candidate_overview}
DOCUMENT CONTENT:
{content_text}"""


def build_structuring_prompt(
    content_text: str,
    document_type: str,
    filename: str | None = None,
    sheet_types: dict[str, str] | None = None,
    candidates: list[str] | None = None,
) -> list[dict[str, str]]:
    """
    Build the structuring prompt messages for OpenAI.

    Args:
        content_text: Normalized document content rendered as text
        document_type: Classifier hint (pl_statement, census_report, ...)
        filename: Original filename for context
        sheet_types: Optional sheet name -> detected sheet type
        candidates: Optional candidate line items found deterministically

    Returns:
        List of message dicts for OpenAI chat completion
    """
    sheet_overview = ''
    if sheet_types:
        lines = [f"- {name}: {sheet_type}" for name, sheet_type in sheet_types.items()]
        sheet_overview = 'Sheets:\n' + '\n'.join(lines) + '\n'

    candidate_overview = ''
    if candidates:
        candidate_overview = (
            'Candidate line items found by keyword scan (verify before using):\n'
            + '\n'.join(f"- {c}" for c in candidates)
            + '\n'
        )

    user_prompt = STRUCTURING_USER_PROMPT_TEMPLATE.format(
        filename=filename or 'unknown',
        document_type=document_type,
        sheet_overview=sheet_overview,
        candidate_overview=candidate_overview,
        content_text=content_text,
    )

    return [
        {'role': 'system', 'content': STRUCTURING_SYSTEM_PROMPT},
        {'role': 'user', 'content': user_prompt},
    ]
