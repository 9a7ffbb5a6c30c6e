def sanitize_text(text: str | None, max_length: int) -> str:
    """
    Strip invalid characters and whitespace, then bound the length.

    Lone surrogates (what undecodable bytes turn into with ``surrogateescape``)
    and NUL characters are dropped because most databases reject them.
    """
    if not text:
        return ""

    text = text.encode("utf-8", errors="ignore").decode("utf-8", errors="ignore")
    text = text.replace("\x00", "").strip()

    if max_length <= 0:
        return ""
    if len(text) > max_length:
        text = text[:max_length]
    return text
