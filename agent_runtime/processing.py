from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from jsonschema import Draft7Validator

from .approval import localize
from .spec import ProcessStep

logger = logging.getLogger("agent-runtime")

PII_PATTERNS = {
    "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    "credit_card": re.compile(r"\b(?:\d[ -]?){13,16}\b"),
    "phone": re.compile(r"(?<!\w)\+?\d[\d\s().-]{7,}\d(?!\w)"),
}

_SCRIPT_HINTS = (
    ("ko", re.compile(r"[가-힯]")),
    ("ja", re.compile(r"[぀-ヿ]")),
    ("zh", re.compile(r"[一-鿿]")),
    ("ru", re.compile(r"[Ѐ-ӿ]")),
    ("ar", re.compile(r"[؀-ۿ]")),
    ("el", re.compile(r"[Ͱ-Ͽ]")),
)


@dataclass
class ProcessResult:
    text: str
    context: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    rejected: Optional[str] = None


def detect_language(text: str) -> str:
    for code, pattern in _SCRIPT_HINTS:
        if pattern.search(text):
            return code
    return "en"


def _coerce(value: str, kind: str) -> Any:
    if kind == "integer":
        return int(value)
    if kind == "number":
        return float(value)
    return value


class Processor:
    """Runs ordered input or output processing steps over a piece of text."""

    def __init__(self, language: str = "en") -> None:
        self.language = language

    def run(self, steps: Sequence[ProcessStep], text: str, *, context: Optional[Mapping[str, Any]] = None) -> ProcessResult:
        result = ProcessResult(text=text)
        merged: Dict[str, Any] = dict(context or {})
        for step in steps:
            handler = getattr(self, f"_{step.kind}")
            handler(step.params, result, merged)
            if result.rejected is not None:
                logger.info("processing rejected step=%s reason=%s", step.kind, result.rejected)
                break
            merged.update(result.context)
        return result

    def _normalize(self, params: Mapping[str, Any], result: ProcessResult, _ctx: Dict[str, Any]) -> None:
        text = result.text
        form = params.get("unicode")
        if form:
            text = unicodedata.normalize(str(form).upper(), text)
        if params.get("collapse_whitespace", True):
            text = re.sub(r"\s+", " ", text)
        if params.get("trim", True):
            text = text.strip()
        if params.get("lowercase", False):
            text = text.lower()
        result.text = text

    def _detect(self, params: Mapping[str, Any], result: ProcessResult, _ctx: Dict[str, Any]) -> None:
        lowered = result.text.lower()
        for intent, keywords in (params.get("intents") or {}).items():
            if any(str(k).lower() in lowered for k in keywords or ()):
                result.context["detected_intent"] = intent
                break
        if params.get("language", True):
            result.context["detected_language"] = detect_language(result.text)

    def _extract(self, params: Mapping[str, Any], result: ProcessResult, _ctx: Dict[str, Any]) -> None:
        prefix = params.get("store_in_context")
        for name, spec in (params.get("fields") or {}).items():
            spec = spec if isinstance(spec, Mapping) else {"pattern": spec}
            pattern = spec.get("pattern")
            if not pattern:
                continue
            match = re.search(str(pattern), result.text, flags=re.IGNORECASE)
            if match is None:
                continue
            raw = match.group(1) if match.groups() else match.group(0)
            try:
                value = _coerce(raw, str(spec.get("type", "string")))
            except ValueError:
                result.warnings.append(f"extracted {name!r} is not a {spec.get('type')}")
                continue
            if prefix:
                result.context.setdefault(str(prefix), {})[name] = value
            else:
                result.context[name] = value

    def _sanitize(self, params: Mapping[str, Any], result: ProcessResult, _ctx: Dict[str, Any]) -> None:
        text = result.text
        for pattern in params.get("block") or ():
            if re.search(str(pattern), text, flags=re.IGNORECASE):
                result.rejected = localize(params.get("message"), self.language) or "Input contains blocked content"
                return
        pii = params.get("pii")
        if pii:
            action = pii.get("action", "mask")
            mask_char = str(pii.get("mask_char", "*"))
            for kind in pii.get("types") or PII_PATTERNS.keys():
                pattern = PII_PATTERNS.get(kind)
                if pattern is None:
                    continue
                if action == "remove":
                    text = pattern.sub("", text)
                else:
                    text = pattern.sub(lambda m: mask_char * len(m.group(0)), text)
        for item in params.get("remove") or ():
            text = re.sub(str(item), "", text)
        result.text = text

    def _validate(self, params: Mapping[str, Any], result: ProcessResult, ctx: Dict[str, Any]) -> None:
        problems: List[str] = []
        text = result.text
        if params.get("min_length") is not None and len(text) < int(params["min_length"]):
            problems.append(f"shorter than {params['min_length']} characters")
        if params.get("max_length") is not None and len(text) > int(params["max_length"]):
            problems.append(f"longer than {params['max_length']} characters")
        if params.get("pattern") and not re.search(str(params["pattern"]), text):
            problems.append("does not match the required pattern")
        values = {**ctx, **result.context}
        for name in params.get("required_fields") or ():
            if values.get(name) in (None, ""):
                problems.append(f"missing {name}")
        schema = params.get("schema")
        if schema:
            for err in Draft7Validator(schema).iter_errors(values):
                problems.append(err.message)
        if not problems:
            return
        if params.get("on_fail", "reject") == "warn":
            result.warnings.extend(f"validation: {p}" for p in problems)
            return
        result.rejected = localize(params.get("message"), self.language) or ("Invalid input: " + "; ".join(problems))

    def _transform(self, params: Mapping[str, Any], result: ProcessResult, _ctx: Dict[str, Any]) -> None:
        text = result.text
        for old, new in (params.get("replace") or {}).items():
            text = text.replace(str(old), str(new))
        result.text = f"{params.get('prefix', '')}{text}{params.get('suffix', '')}"

    def _format(self, params: Mapping[str, Any], result: ProcessResult, ctx: Dict[str, Any]) -> None:
        text = result.text
        template = params.get("template")
        if template:
            text = str(template).replace("{content}", text)
        max_length = params.get("max_length")
        if max_length is not None and len(text) > int(max_length):
            text = text[: max(0, int(max_length) - 3)] + "..."
        result.text = text
