from typing import Optional


def mask_segment(text: str, segment: Optional[str]) -> str:
    """Hide the shared auth path segment in anything that reaches the logs."""
    if not segment or not text:
        return text
    return text.replace(segment, f"{segment[:2]}****")


def client_label(client_ip: Optional[str]) -> str:
    return client_ip or "<unknown>"
