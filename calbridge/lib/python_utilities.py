def to_normal_str(text):
    """
    Make sure we return a normal string with LF line endings, no matter
    if we got str or bytes.
    """
    if text is None:
        return text
    if not isinstance(text, str):
        text = text.decode("utf-8")
    text = text.replace("\r\n", "\n")
    return text


def to_unicode(text):
    """
    Decode bytes, but leave the line endings alone.  Used where the
    exact wire representation must survive.
    """
    if text and isinstance(text, bytes):
        return text.decode("utf-8")
    return text
