# sheetscan/omr/template_meta.py
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Union

from sheetscan.types import MarkerLayout, QuestionSpec, get_layout


class TemplateError(ValueError):
    pass


@dataclass(frozen=True)
class SheetTemplate:
    """
    In-memory sheet template.

    raw shape:
        {
          "version": "v1",
          "layout": "corners4",
          "questions": [{"type": "single", "optionCount": 4, "box": {...}}, ...]
        }

    questions are NOT validated here: a broken entry should only fail its own
    slot when the pipeline runs, not the whole sheet.
    """
    raw: Dict[str, Any]

    @property
    def version(self) -> str:
        return str(self.raw.get("version") or "v1")

    @property
    def layout(self) -> MarkerLayout:
        return get_layout(str(self.raw.get("layout") or "corners4"))

    @property
    def question_entries(self) -> List[Mapping[str, Any]]:
        return list(self.raw.get("questions") or [])

    def question_specs(self) -> List[QuestionSpec]:
        """Strict variant: every entry parsed, first bad one raises InvalidQuestionSpec."""
        return [QuestionSpec.from_dict(q) for q in self.question_entries]

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "SheetTemplate":
        if not isinstance(d, Mapping):
            raise TemplateError(f"template must be a mapping, got {type(d).__name__}")
        questions = d.get("questions")
        if questions is not None and not isinstance(questions, (list, tuple)):
            raise TemplateError("template 'questions' must be a list")
        return SheetTemplate(raw=dict(d))

    @staticmethod
    def from_json(text: Union[str, bytes]) -> "SheetTemplate":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise TemplateError(f"template_json_parse_error: {e}") from e
        return SheetTemplate.from_dict(data)
