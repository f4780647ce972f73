"""Incremental decoder for newline-delimited JSON records"""
import codecs
import json
import logging
import re
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from core.errors import ProtocolError
from core.events import Frame, parse_frame

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

_SSE_PREFIX = re.compile(r"^data: ?")


class DiagnosticRecord(BaseModel):
    """stderr-style text from the engine"""
    kind: Literal["diagnostic"] = "diagnostic"
    text: str


class OutputRecord(BaseModel):
    """Primary output: chat state object or plain text"""
    kind: Literal["output"] = "output"
    payload: Any


class EventRecord(BaseModel):
    """Structured progress event"""
    kind: Literal["event"] = "event"
    frame: Frame


class DoneRecord(BaseModel):
    """Termination sentinel"""
    kind: Literal["done"] = "done"


Record = Union[DiagnosticRecord, OutputRecord, EventRecord, DoneRecord]

EVENT_ENVELOPES = ("run", "call", "prompt")


def decode_record(obj: Any) -> Record:
    """
    Classify a parsed JSON object.

    Shapes are tried in a fixed order: diagnostic (`stderr`), primary
    output (`stdout`), then an event envelope (`run` / `call` / `prompt`)
    or a bare frame carrying `type`. The first match wins.
    """
    if not isinstance(obj, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(obj).__name__}")

    diagnostic = obj.get("stderr")
    if diagnostic:
        if not isinstance(diagnostic, str):
            diagnostic = json.dumps(diagnostic)
        return DiagnosticRecord(text=diagnostic)

    if "stdout" in obj:
        return OutputRecord(payload=obj["stdout"])

    body = obj
    for key in EVENT_ENVELOPES:
        if isinstance(obj.get(key), dict):
            body = obj[key]
            break

    if "type" not in body:
        raise ProtocolError(f"Record has no recognizable shape: {sorted(obj)}")

    try:
        return EventRecord(frame=parse_frame(body))
    except ValidationError as e:
        raise ProtocolError(f"Invalid {body.get('type')} frame: {e}") from e


class FrameDecoder:
    """
    Turns arbitrarily split chunks into discrete records.

    A trailing fragment that does not parse yet is carried over and
    prepended to the next chunk. With `envelope` set, every parsed object
    is treated as if it were wrapped as `{envelope: obj}` and lines that
    are not JSON pass through as plain text, which is how the engine's
    stdout pipe is read.
    """

    def __init__(self, envelope: Optional[str] = None):
        self.envelope = envelope
        self.carry = ""
        self.done = False
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[str, bytes]) -> List[Record]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        if self.done or not chunk:
            return []

        data = self.carry + chunk
        self.carry = ""
        lines = data.split("\n")
        records: List[Record] = []

        for index, line in enumerate(lines):
            last = index == len(lines) - 1
            content = _SSE_PREFIX.sub("", line.strip()).strip()
            if not content:
                continue

            if content == DONE_SENTINEL:
                self.done = True
                records.append(DoneRecord())
                break

            try:
                obj = json.loads(content)
            except json.JSONDecodeError:
                if last:
                    self.carry = line
                elif self.envelope:
                    records.append(OutputRecord(payload=content))
                else:
                    logger.warning(f"Skipping malformed record: {content[:100]}")
                continue

            if last and not isinstance(obj, dict):
                self.carry = line
                continue

            record = self._classify(obj, content)
            if record is not None:
                records.append(record)

        return records

    def _classify(self, obj: Any, content: str) -> Optional[Record]:
        if self.envelope:
            obj = {self.envelope: obj}
        try:
            return decode_record(obj)
        except ProtocolError as e:
            logger.warning(f"Skipping record: {e} - {content[:100]}")
            return None

    def close(self) -> str:
        """Stop decoding and return any unparsed leftover"""
        tail = self._utf8.decode(b"", final=True)
        leftover = (self.carry + tail).strip()
        self.carry = ""
        return leftover
