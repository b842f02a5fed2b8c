import uuid


def generate_uuid4() -> str:
    return str(uuid.uuid4())
