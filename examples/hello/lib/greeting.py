def make_message(name: str) -> str:
    return f"Hello, {name}! (from {__name__})"
