"""
Response chunker - splits long answers into speakable segments.

Pure functions, no I/O. Chunks rejoin to the original text exactly:
sentence pieces keep their trailing whitespace, and an oversized sentence is
hard-split into fixed-length slices in order.
"""
import re
from typing import List

# Maximum characters per spoken segment
MAX_CHUNK_LENGTH = 400

# Sentence ends at ., ! or ? followed by whitespace
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> List[str]:
    """Split text into sentences, each keeping the whitespace that follows it."""
    pieces: List[str] = []
    start = 0
    for match in SENTENCE_BOUNDARY.finditer(text):
        pieces.append(text[start:match.end()])
        start = match.end()
    if start < len(text):
        pieces.append(text[start:])
    return pieces


def chunk_text(text: str, max_len: int = MAX_CHUNK_LENGTH) -> List[str]:
    """
    Pack sentences greedily into chunks of at most max_len characters.

    A new chunk starts when the next sentence would overflow the current one.
    A sentence longer than max_len is sliced into max_len pieces; its final
    remainder starts the next chunk.

    Args:
        text: Answer text to split
        max_len: Maximum chunk length (must be positive)

    Returns:
        Chunks in input order. Empty input gives an empty list.
    """
    if max_len <= 0:
        raise ValueError(f"max_len must be positive, got {max_len}")

    chunks: List[str] = []
    current = ""

    for sentence in split_sentences(text):
        if len(current) + len(sentence) <= max_len:
            current += sentence
            continue

        if current:
            chunks.append(current)
            current = ""

        while len(sentence) > max_len:
            chunks.append(sentence[:max_len])
            sentence = sentence[max_len:]
        current = sentence

    if current:
        chunks.append(current)

    return chunks
