"""Prompt templates for the draft step and placeholder substitution."""

from __future__ import annotations

import re
from collections.abc import Mapping

NOT_SPECIFIED = "Not specified"

TAILOR_PROMPT = """\
Inputs you receive:
- Job title: {{title}}
- Hiring company: {{company}}
- Priority competencies: {{competencies}}
- Candidate CV sections (Markdown):
{{cv_sections}}

Tasks:
1. Draft a role-specific summary that links the candidate's experience to the job title and company.
2. Reorder or trim the supplied CV sections so the most relevant accomplishments for the listed competencies appear first.
3. Only quantify achievements when the original CV already provides the numbers.
4. Replace meta-notes with a concise "Selected Highlights" or "Value Proposition" section featuring two or three genuine differentiators grounded in the source material.
5. Treat employment or education gaps as interview talking points instead of written sections.
6. Never introduce employers or qualifications that are absent from the source CV.
7. Do not append a standalone suggestions section at the end of the tailored CV.

Output:
- Return the tailored CV as valid Markdown.
- Use British English throughout.
- Preserve factual accuracy while keeping gap context out of the document itself.
- Include the "Selected Highlights" or "Value Proposition" section directly after the summary unless the source CV lacks material to support it.
- Present the document as the final CV ready for submission without suggesting further edits or mentioning AI involvement.
"""

_PLACEHOLDER = re.compile(r"\{\{(title|company|competencies|cv_sections)\}\}")


def render_template(template: str, values: Mapping[str, str]) -> str:
    """Substitute known placeholders in a single pass.

    Inserted values are never rescanned, so a CV that itself contains `{{title}}`
    is kept verbatim.
    """

    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def build_constraints(  # noqa: PLR0913
    *,
    target_text: str,
    title: str = "",
    company: str = "",
    competencies: str = "",
    cv_sections: str = "",
    template: str = "",
) -> str:
    """Fill the tailoring template; a non-empty `template` replaces the default."""

    return render_template(
        template.strip() or TAILOR_PROMPT,
        {
            "title": title.strip() or NOT_SPECIFIED,
            "company": company.strip() or NOT_SPECIFIED,
            "competencies": competencies.strip() or NOT_SPECIFIED,
            "cv_sections": cv_sections.strip() or target_text,
        },
    )
