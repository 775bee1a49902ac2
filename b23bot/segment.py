"""
Message segment builders and log rendering.

Segments are the wire shape used by the gateway: {"type": ..., "data": {...}}.
"""

import base64
from typing import Any, Dict, List, Optional, Union

Segment = Dict[str, Any]


def _file_value(file: Union[str, bytes]) -> str:
    if isinstance(file, (bytes, bytearray)):
        return "base64://" + base64.b64encode(file).decode("ascii")
    return file


def text(content: str) -> Segment:
    return {"type": "text", "data": {"text": content}}


def face(face_id: Union[str, int]) -> Segment:
    return {"type": "face", "data": {"id": str(face_id)}}


def at(qq: Union[int, str], name: Optional[str] = None) -> Segment:
    """Mention a user, or everyone with qq="all"."""
    data: Dict[str, Any] = {"qq": str(qq)}
    if name:
        data["name"] = name
    return {"type": "at", "data": data}


def image(
    file: Union[str, bytes],
    cache: bool = True,
    timeout: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Segment:
    data: Dict[str, Any] = {"file": _file_value(file), "cache": str(cache).lower()}
    if timeout:
        data["timeout"] = str(timeout)
    if headers:
        data["headers"] = headers
    return {"type": "image", "data": data}


def record(file: str) -> Segment:
    return {"type": "record", "data": {"file": file}}


def video(file: Union[str, bytes], **extra: Any) -> Segment:
    data: Dict[str, Any] = {"file": _file_value(file)}
    for key, value in extra.items():
        data[key] = str(value) if isinstance(value, (int, float)) else value
    return {"type": "video", "data": data}


def reply(message_id: int) -> Segment:
    return {"type": "reply", "data": {"id": message_id}}


def render_segment(segment: Segment) -> str:
    """Flatten one segment to its log text form, e.g. {face:100}."""
    seg_type = segment.get("type")
    data = segment.get("data") or {}

    if seg_type == "text":
        return str(data.get("text", ""))
    if seg_type == "at":
        return f"{{at:{data.get('qq')}}}"
    if seg_type == "face":
        return f"{{face:{data.get('id')}}}"
    if seg_type == "image":
        # md5 file names, drop the extension
        return f"{{image:{str(data.get('file', '')).split('.')[0]}}}"
    if seg_type == "record":
        return f"{{record:{data.get('file')}}}"
    if seg_type == "video":
        return f"{{video:{data.get('file')}}}"
    return ""


def render_segments(message: Union[List[Segment], str, None]) -> str:
    if message is None:
        return ""
    if isinstance(message, str):
        return message
    return "".join(render_segment(seg) for seg in message)


def extract_text(message: Union[List[Segment], str, None]) -> str:
    """Concatenate the text segments of a message, ignoring everything else."""
    if message is None:
        return ""
    if isinstance(message, str):
        return message
    return "".join(
        str(seg.get("data", {}).get("text", ""))
        for seg in message
        if seg.get("type") == "text"
    )
