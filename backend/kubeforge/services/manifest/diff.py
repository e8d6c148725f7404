from __future__ import annotations

import difflib

from kubeforge.schemas.apply import DiffRow, ManifestDiff

DIFF_CONTEXT_LINES = 3


def build_diff(original: str, candidate: str, *, label: str = "manifest") -> ManifestDiff:
    """Line diff of ``original`` against ``candidate``.

    ``unified`` is the classic patch text; ``rows`` pair both sides line by
    line for a side-by-side view. Line numbers are 1-based.
    """
    left = original.splitlines()
    right = candidate.splitlines()

    unified = "\n".join(
        difflib.unified_diff(
            left,
            right,
            fromfile=f"original/{label}",
            tofile=f"modified/{label}",
            lineterm="",
            n=DIFF_CONTEXT_LINES,
        )
    )

    rows: list[DiffRow] = []
    added = removed = 0
    matcher = difflib.SequenceMatcher(a=left, b=right, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for offset in range(i2 - i1):
                rows.append(DiffRow(tag="equal", left_number=i1 + offset + 1, left=left[i1 + offset],
                                    right_number=j1 + offset + 1, right=right[j1 + offset]))
            continue
        removed += i2 - i1
        added += j2 - j1
        for offset in range(max(i2 - i1, j2 - j1)):
            li, rj = i1 + offset, j1 + offset
            has_left, has_right = li < i2, rj < j2
            row_tag = "replace" if has_left and has_right else ("delete" if has_left else "insert")
            rows.append(
                DiffRow(
                    tag=row_tag,
                    left_number=li + 1 if has_left else None,
                    left=left[li] if has_left else None,
                    right_number=rj + 1 if has_right else None,
                    right=right[rj] if has_right else None,
                )
            )

    return ManifestDiff(unified=unified, rows=rows, added=added, removed=removed, identical=not (added or removed))
