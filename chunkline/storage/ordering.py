from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence

from chunkline.core.errors import ValidationFailure


def ensure_exact_membership(members: Iterable[str], ordered_ids: Sequence[str]) -> None:
  """Reject a reorder list that is not a permutation of the project's chunk ids."""
  member_set = set(members)
  counts = Counter(ordered_ids)
  duplicates = sorted(chunk_id for chunk_id, count in counts.items() if count > 1)
  missing = sorted(member_set - counts.keys())
  extra = sorted(counts.keys() - member_set)
  if missing or extra or duplicates:
    raise ValidationFailure("Reorder must list every chunk of the project exactly once.", missing=missing, extra=extra, duplicates=duplicates)
