import secrets

_ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'


def generate_key(length):
    return ''.join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_message_id():
    return f"MSG-{generate_key(16)}"


def generate_conversation_id(is_group: bool = False):
    prefix = 'GRP' if is_group else 'CONV'
    return f"{prefix}-{generate_key(12)}"
