def dict_merge(base: dict, override: dict) -> dict:
    """Merge ``override`` into a copy of ``base``

    Nested mappings are merged key by key, any other value from
    ``override`` replaces the one in ``base``. Inputs are not modified.
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = dict_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
