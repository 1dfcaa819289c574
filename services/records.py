# services/records.py
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

DEFAULT_KEY_PREFIX = "resume:"


def new_record_id() -> str:
    return str(uuid4())


def record_key(record_id: str, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    return f"{prefix}{record_id}"


@dataclass
class SubmissionRecord:
    id: str
    resume_path: str
    image_path: str
    company_name: str
    job_title: str
    job_description: str
    # "" while pending; set once after inference.
    feedback: Any = ""

    @property
    def is_complete(self) -> bool:
        return self.feedback not in ("", None, {}, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resumePath": self.resume_path,
            "imagePath": self.image_path,
            "companyName": self.company_name,
            "jobTitle": self.job_title,
            "jobDescription": self.job_description,
            "feedback": self.feedback,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SubmissionRecord":
        return cls(
            id=str(d["id"]),
            resume_path=str(d.get("resumePath") or ""),
            image_path=str(d.get("imagePath") or ""),
            company_name=str(d.get("companyName") or ""),
            job_title=str(d.get("jobTitle") or ""),
            job_description=str(d.get("jobDescription") or ""),
            feedback=d.get("feedback", ""),
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["SubmissionRecord"]:
        if not raw:
            return None
        data = json.loads(raw)
        if not isinstance(data, dict) or "id" not in data:
            return None
        return cls.from_dict(data)
