"""
phonetics.py — Tutor Engine · Phonetic Normalizer
=================================================
Reduces a word to a compact Metaphone key so that spelling variants the
recognizer picks for the same sound ("phone" / "fone", "cat" / "kat")
compare as equal.  Keys come from jellyfish's Metaphone; stored scores
depend on them, so the encoder is not swapped lightly.
"""

from __future__ import annotations

import jellyfish


def phonetic_key(word: str) -> str:
    """Metaphone key, falling back to the word itself when the key is empty."""
    return jellyfish.metaphone(word or "") or word
