"""Natural-language query -> structured :class:`QueryPlan`.

The planner is rule based.  Recognised shapes::

    who calls parse_file            -> callers
    what does parse_file call       -> callees
    where is GraphStore defined     -> definition
    what depends on / impact of X   -> impact
    subclasses of BaseModel         -> subclasses
    functions in pkg/utils.py       -> file_entities

Anything else becomes a hybrid ``search``.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

_KIND_WORDS = {
    "class": "class",
    "classes": "class",
    "function": "function",
    "functions": "function",
    "method": "method",
    "methods": "method",
    "variable": "variable",
    "variables": "variable",
    "constant": "variable",
    "constants": "variable",
    "import": "import",
    "imports": "import",
}

_SYMBOL = r"`?(?P<target>[A-Za-z_][A-Za-z0-9_.]*)`?"
_FILE = r"`?(?P<file>[\w./\\-]+\.[A-Za-z0-9]+)`?"

_RULES = [
    ("callers", re.compile(rf"^(?:who|what)\s+(?:calls|uses|invokes)\s+{_SYMBOL}", re.I)),
    ("callers", re.compile(rf"^(?:callers|usages|uses)\s+of\s+{_SYMBOL}", re.I)),
    ("callees", re.compile(rf"^what\s+does\s+{_SYMBOL}\s+(?:call|use|invoke)", re.I)),
    ("callees", re.compile(rf"^(?:callees|calls)\s+(?:of|from|in)\s+{_SYMBOL}", re.I)),
    ("definition", re.compile(rf"^where\s+is\s+{_SYMBOL}\s+(?:defined|declared|implemented)", re.I)),
    ("definition", re.compile(rf"^(?:definition|declaration)\s+of\s+{_SYMBOL}", re.I)),
    ("definition", re.compile(rf"^(?:find|show|get)\s+(?:the\s+)?(?:class|function|method|variable)\s+{_SYMBOL}$", re.I)),
    ("impact", re.compile(rf"^what\s+(?:depends\s+on|breaks\s+if\s+i\s+change)\s+{_SYMBOL}", re.I)),
    ("impact", re.compile(rf"^(?:impact|dependents)\s+of\s+(?:changing\s+)?{_SYMBOL}", re.I)),
    ("subclasses", re.compile(rf"^(?:subclasses|children)\s+of\s+{_SYMBOL}", re.I)),
    ("subclasses", re.compile(rf"^(?:what|which\s+classes)\s+(?:extends?|inherits?\s+from)\s+{_SYMBOL}", re.I)),
]

_FILE_RULE = re.compile(
    rf"^(?:(?:list|show|what)\s+)?(?:(?:all|the)\s+)?(?P<kind>\w+)?\s*(?:are\s+|is\s+)?(?:in|inside|defined\s+in)\s+{_FILE}\s*\??$",
    re.I,
)


@dataclass
class QueryPlan:
    intent: str
    raw: str
    target: Optional[str] = None
    file_path: Optional[str] = None
    kinds: List[str] = field(default_factory=list)
    limit: int = 10

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["filePath"] = payload.pop("file_path")
        return payload


class QueryPlanner:
    def plan(self, text: str, limit: int = 10) -> QueryPlan:
        raw = text.strip()
        cleaned = raw.rstrip("?!. ")

        for intent, pattern in _RULES:
            match = pattern.search(cleaned)
            if match:
                return QueryPlan(
                    intent=intent,
                    raw=raw,
                    target=match.group("target").rstrip("()."),
                    kinds=self._kinds(cleaned),
                    limit=limit,
                )

        match = _FILE_RULE.search(raw)
        if match:
            kind = _KIND_WORDS.get((match.group("kind") or "").lower())
            return QueryPlan(
                intent="file_entities",
                raw=raw,
                file_path=match.group("file").replace("\\", "/"),
                kinds=[kind] if kind else [],
                limit=limit,
            )

        return QueryPlan(intent="search", raw=raw, target=raw, kinds=self._kinds(cleaned), limit=limit)

    @staticmethod
    def _kinds(text: str) -> List[str]:
        kinds: List[str] = []
        for word in re.findall(r"[A-Za-z_]+", text.lower()):
            kind = _KIND_WORDS.get(word)
            if kind and kind not in kinds and kind != "import":
                kinds.append(kind)
        return kinds
