# services/feedback/instructions.py
from __future__ import annotations

import json

FEEDBACK_CATEGORIES = ("ATS", "toneAndStyle", "content", "structure", "skills")

RESPONSE_FORMAT = {
    "overallScore": "number, max 100",
    **{
        cat: {
            "score": "number, max 100",
            "tips": [
                {
                    "type": '"good" | "improve"',
                    "tip": "short title",
                    "explanation": "detailed explanation (omitted for ATS)",
                }
            ],
        }
        for cat in FEEDBACK_CATEGORIES
    },
}


def prepare_instructions(*, job_title: str, job_description: str) -> str:
    job_title = (job_title or "").strip() or "(not provided)"
    job_description = (job_description or "").strip() or "(not provided)"
    fmt = json.dumps(RESPONSE_FORMAT, indent=2)

    return (
        "You are an expert in ATS (Applicant Tracking System) and resume analysis.\n"
        "Analyze and rate this resume and suggest how to improve it.\n"
        "The rating can be low if the resume is bad. Be thorough and detailed; "
        "do not be afraid to point out mistakes or areas for improvement.\n"
        "If provided, take the job description into consideration.\n"
        f"The job title is: {job_title}\n"
        f"The job description is: {job_description}\n"
        "Provide the feedback using the following format:\n"
        f"{fmt}\n"
        "Return the analysis as a JSON object, without any other text and without backticks."
    )
