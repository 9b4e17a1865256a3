import re

from finchat.types import CsvTable

_SEPARATOR_RE = re.compile(r"^\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?$")
_CELL_SPLIT_RE = re.compile(r"(?<!\\)\|")


def _cell(value: object) -> str:
    return str(value if value is not None else "").replace("\n", " ").replace("|", "\\|").strip()


def csv_to_markdown(table: CsvTable) -> str:
    """Markdown rendering of a stored table: bold title, optional description, pipe table."""
    lines = [f"**{table.title or 'Table'}**", ""]
    if table.description:
        lines += [table.description, ""]
    lines.append("| " + " | ".join(_cell(h) for h in table.headers) + " |")
    lines.append("| " + " | ".join("---" for _ in table.headers) + " |")
    for row in table.rows:
        cells = [_cell(v) for v in row][: len(table.headers)]
        cells += [""] * (len(table.headers) - len(cells))
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)


def is_table_line(line: str) -> bool:
    return line.strip().startswith("|")


def parse_table(lines: list[str]) -> list[list[str]]:
    """Rows of cell strings from a block of pipe-table lines; separator rows are dropped."""
    rows: list[list[str]] = []
    for line in lines:
        stripped = line.strip()
        if _SEPARATOR_RE.match(stripped):
            continue
        if stripped.startswith("|"):
            stripped = stripped[1:]
        if stripped.endswith("|") and not stripped.endswith("\\|"):
            stripped = stripped[:-1]
        rows.append([c.strip().replace("\\|", "|") for c in _CELL_SPLIT_RE.split(stripped)])
    width = max((len(r) for r in rows), default=0)
    return [r + [""] * (width - len(r)) for r in rows]
