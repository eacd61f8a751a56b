from typing import Iterable


def path_violation(path: str):
    """Returns why `path` breaks the file-tree path rules, or None if it is fine."""
    if not isinstance(path, str) or not path:
        return "empty path"
    if "\\" in path:
        return "backslash separator"
    if path.startswith("/") or (len(path) > 1 and path[1] == ":"):
        return "absolute path"
    for segment in path.split("/"):
        if segment == "":
            return "empty segment"
        if segment in (".", ".."):
            return f"'{segment}' segment"
    return None


def check_tree_paths(paths: Iterable[str]):
    """Returns a list of (path, reason) for every path that breaks the rules, duplicates included."""
    problems = []
    seen = set()
    for path in paths:
        reason = path_violation(path)
        if reason:
            problems.append((path, reason))
        elif path in seen:
            problems.append((path, "duplicate path"))
        seen.add(path)
    return problems
