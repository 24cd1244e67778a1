import uuid


def new_document_id() -> str:
    """Opaque 24-character id used on the wire instead of the row id"""
    return uuid.uuid4().hex[:24]
