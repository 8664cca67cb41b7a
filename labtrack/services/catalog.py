import re
from collections.abc import Iterable

from rapidfuzz import fuzz

from labtrack.errors import NotFoundError, ValidationError
from labtrack.schemas.catalog import LabTest


def _normalize(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", text.lower())


class TestCatalog:
    """Read-only view over the configured test catalog.

    ``resolve`` turns a caller-supplied reference into a catalog entry: an exact
    id, then an exact code (case-insensitive), then the closest name by fuzzy
    score at or above ``fuzzy_threshold``.
    """

    __test__ = False

    def __init__(self, tests: Iterable[LabTest], fuzzy_threshold: int = 85):
        self._tests = list(tests)
        self.fuzzy_threshold = fuzzy_threshold
        self._by_id: dict[str, LabTest] = {}
        self._by_code: dict[str, LabTest] = {}
        for test in self._tests:
            if test.id in self._by_id:
                raise ValidationError(f"Duplicate catalog id: {test.id}")
            self._by_id[test.id] = test
            self._by_code[test.code.upper()] = test

    def __len__(self) -> int:
        return len(self._tests)

    def all(self) -> list[LabTest]:
        return list(self._tests)

    def categories(self) -> list[str]:
        seen: list[str] = []
        for test in self._tests:
            if test.category not in seen:
                seen.append(test.category)
        return seen

    def get(self, test_id: str) -> LabTest | None:
        return self._by_id.get(test_id)

    def by_code(self, code: str) -> LabTest | None:
        return self._by_code.get(code.strip().upper())

    def _fuzzy_match(self, name: str) -> tuple[LabTest | None, float]:
        name_norm = _normalize(name)
        best_score = -1.0
        best = None
        for test in self._tests:
            for alias in (test.name, test.code):
                score = fuzz.ratio(name_norm, _normalize(alias))
                if score > best_score:
                    best_score = score
                    best = test
        if best_score >= self.fuzzy_threshold:
            return best, best_score
        return None, best_score

    def resolve(self, ref: str) -> LabTest:
        ref = (ref or "").strip()
        if not ref:
            raise ValidationError("Test reference must not be empty")

        test = self.get(ref) or self.by_code(ref)
        if test is not None:
            return test
        test, score = self._fuzzy_match(ref)
        if test is None:
            raise NotFoundError(f"No catalog test matches {ref!r}", detail={"best_score": round(score, 1)})
        return test

    def resolve_many(self, refs: Iterable[str]) -> list[LabTest]:
        """Resolve references, dropping repeats of the same test while keeping order."""
        resolved: list[LabTest] = []
        for ref in refs:
            test = self.resolve(ref)
            if all(existing.id != test.id for existing in resolved):
                resolved.append(test)
        return resolved
