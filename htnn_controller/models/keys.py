def object_key(namespace: str, name: str) -> str:
    """Stable index key for a namespaced object."""
    return f"{namespace}/{name}"
