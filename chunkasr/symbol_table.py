"""Token id <-> symbol mapping read from units.txt."""

import logging
from pathlib import Path
from typing import Dict, Iterable, Union

logger = logging.getLogger(__name__)

UNITS_NAME = "units.txt"
WORD_BOUNDARY = "▁"


class SymbolTable:
    """Symbols of the model's output vocabulary.

    Args:
        symbols: Mapping token id -> symbol
    """

    def __init__(self, symbols: Dict[int, str]):
        self.symbols = dict(symbols)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SymbolTable":
        """Read a ``<symbol> <id>`` per line file."""
        symbols = {}
        with open(path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                parts = line.split()
                if not parts:
                    continue
                if len(parts) != 2:
                    raise ValueError(f"{path}:{line_no}: expected '<symbol> <id>', got {line.strip()!r}")
                symbols[int(parts[1])] = parts[0]
        logger.info(f"Loaded {len(symbols)} symbols from {path}")
        return cls(symbols)

    def __len__(self) -> int:
        return len(self.symbols)

    def find(self, token_id: int) -> str:
        return self.symbols.get(token_id, "")

    def to_sentence(self, tokens: Iterable[int]) -> str:
        """Join symbols; the word boundary marker becomes a space."""
        text = "".join(self.find(token) for token in tokens)
        return text.replace(WORD_BOUNDARY, " ").strip()
