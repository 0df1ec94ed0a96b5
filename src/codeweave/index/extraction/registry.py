"""Extractor selection by file suffix, fixed at startup from configuration."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import PurePosixPath

from codeweave.index.extraction.base import MAX_ERROR_RATIO, ExtractionResult, LanguageExtractor
from codeweave.index.extraction.javascript import JavaScriptExtractor, TypeScriptExtractor
from codeweave.index.extraction.python import PythonExtractor

EXTRACTORS: dict[str, type[LanguageExtractor]] = {
    "python": PythonExtractor,
    "javascript": JavaScriptExtractor,
    "typescript": TypeScriptExtractor,
}


class ExtractorRegistry:
    """Maps file suffixes to the extractor of each enabled language."""

    def __init__(
        self,
        languages: Iterable[str] = tuple(EXTRACTORS),
        max_error_ratio: float = MAX_ERROR_RATIO,
    ) -> None:
        self._by_suffix: dict[str, LanguageExtractor] = {}
        self.languages: list[str] = []
        for language in languages:
            cls = EXTRACTORS.get(language)
            if cls is None:
                raise ValueError(f"No extractor for language: {language}")
            extractor = cls(max_error_ratio=max_error_ratio)
            self.languages.append(language)
            for suffix in cls.extensions:
                self._by_suffix[suffix] = extractor

    @property
    def suffixes(self) -> frozenset[str]:
        return frozenset(self._by_suffix)

    def for_path(self, file_path: str) -> LanguageExtractor | None:
        return self._by_suffix.get(PurePosixPath(file_path).suffix.lower())

    def extract(self, file_path: str, content: bytes) -> ExtractionResult:
        """Extract with the matching extractor; unsupported files yield a warning only."""
        extractor = self.for_path(file_path)
        if extractor is None:
            return ExtractionResult(
                file_path=file_path,
                language="unknown",
                module_name=str(PurePosixPath(file_path).with_suffix("")),
                warnings=[f"no grammar for {PurePosixPath(file_path).suffix or file_path}"],
            )
        return extractor.extract(file_path, content)
