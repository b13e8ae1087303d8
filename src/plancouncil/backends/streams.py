from __future__ import annotations

import asyncio
import codecs
from pathlib import Path

from plancouncil.files import atomic_write_text, read_text_or_none

RUN_SEPARATOR = f"\n{'=' * 60}\n=== New run ===\n{'=' * 60}\n\n"
READ_CHUNK_BYTES = 4096


def prepare_log(log_file: Path, append_log: bool) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if append_log:
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(RUN_SEPARATOR)
    else:
        log_file.write_text("", encoding="utf-8")


async def _pump(stream: asyncio.StreamReader | None, log_file: Path) -> str:
    if stream is None:
        return ""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: list[str] = []
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            parts.append(text)
            with log_file.open("a", encoding="utf-8") as handle:
                handle.write(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        parts.append(tail)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(tail)
    return "".join(parts)


async def stream_to_log(
    stdout: asyncio.StreamReader | None,
    stderr: asyncio.StreamReader | None,
    log_file: Path,
) -> tuple[str, str]:
    """Copy both pipes into ``log_file`` as they arrive and return their full text."""
    stdout_text, stderr_text = await asyncio.gather(
        _pump(stdout, log_file),
        _pump(stderr, log_file),
    )
    return stdout_text, stderr_text


def read_continuation_id(continuation_file: Path | None) -> str | None:
    content = read_text_or_none(continuation_file)
    if content is None:
        return None
    stripped = content.strip()
    return stripped or None


def write_continuation_id(continuation_file: Path | None, continuation_id: str | None) -> bool:
    if continuation_file is None or not continuation_id:
        return False
    atomic_write_text(continuation_file, continuation_id)
    return True
