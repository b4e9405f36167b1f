from __future__ import annotations

"""Face-count extraction from face-analyzer relay responses.

Responses arrive in several shapes depending on which layer produced them:

- `{"ok": true, "faces": 2}` when a count was computed upstream
- `{"ok": true, "result": {"results": [{"entities": [...]}]}}` with the raw
  api4ai payload (older relays put it under `raw`)
- `{"ok": false, "error": "..."}` on transport or backend failure

Extractors run in priority order and the first one returning a count wins.
"""

import math
from typing import Any, Callable, Iterable, List, Mapping, Optional

Extractor = Callable[[Mapping[str, Any]], Optional[int]]

FACE_MARKER = "face"


def explicit_face_count(response: Mapping[str, Any]) -> Optional[int]:
    """Use a numeric top-level `faces` field when present."""
    faces = response.get("faces")
    if isinstance(faces, bool):
        return None
    if isinstance(faces, int):
        return max(0, faces)
    if isinstance(faces, float):
        if not math.isfinite(faces) or faces <= 0:
            return 0
        # Any positive fraction still means a face was seen.
        return max(1, int(faces))
    if isinstance(faces, str) and faces.strip().isdigit():
        return int(faces.strip())
    return None


def _mentions_face(entity: Mapping[str, Any]) -> bool:
    for key in ("name", "kind", "type"):
        value = entity.get(key)
        if isinstance(value, str) and FACE_MARKER in value.lower():
            return True
    classes = entity.get("classes")
    if isinstance(classes, Mapping):
        labels: Iterable[Any] = classes.keys()
    elif isinstance(classes, (list, tuple)):
        labels = classes
    else:
        return False
    return any(isinstance(label, str) and FACE_MARKER in label.lower() for label in labels)


def entity_object_count(response: Mapping[str, Any]) -> Optional[int]:
    """Count `result.results[0].entities[*].objects[*]`.

    Entities labelled as faces are preferred; when none carry a face label
    every entity's objects are counted. A non-ok result status counts as 0.
    """
    payload = response.get("result")
    if payload is None:
        payload = response.get("raw")
    if not isinstance(payload, Mapping):
        return None

    results = payload.get("results")
    if not isinstance(results, list) or not results:
        return None
    first = results[0]
    if not isinstance(first, Mapping):
        return None

    status = first.get("status")
    if isinstance(status, Mapping) and status.get("code") not in (None, "ok"):
        return 0

    entities = first.get("entities")
    if not isinstance(entities, list):
        return None
    candidates = [entity for entity in entities if isinstance(entity, Mapping)]
    face_entities = [entity for entity in candidates if _mentions_face(entity)]
    counted = face_entities or candidates
    return sum(len(entity["objects"]) for entity in counted if isinstance(entity.get("objects"), list))


DEFAULT_EXTRACTORS: List[Extractor] = [explicit_face_count, entity_object_count]


def extract_face_count(response: Any, extractors: Optional[List[Extractor]] = None) -> int:
    """Return the number of faces in a relay response; failures count as 0."""
    if not isinstance(response, Mapping) or response.get("ok") is False:
        return 0
    for extractor in extractors or DEFAULT_EXTRACTORS:
        count = extractor(response)
        if count is not None:
            return count
    return 0
