from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from examly.storage.models import MaterialRecord
from examly.utils.text import clip_text


@dataclass(frozen=True, slots=True)
class PackedMaterials:
    text: str
    material_ids: list[str]
    truncated: bool


def pack_documents(documents: Sequence[tuple[str, str]]) -> str:
    lines: list[str] = ["<BEGIN_DOCUMENTS>"]

    for doc_id, text in documents:
        lines.append(f'<DOC_START id="{doc_id}">')
        lines.append(text)
        lines.append("<DOC_END>")

    lines.append("<END_DOCUMENTS>")
    return "\n".join(lines)


def pack_materials(
    materials: Sequence[MaterialRecord],
    *,
    max_chars: int,
) -> PackedMaterials:
    """Pack processed material text in creation order within ``max_chars``.

    Documents that no longer fit are clipped; later ones are skipped.
    """
    documents: list[tuple[str, str]] = []
    material_ids: list[str] = []
    remaining = max_chars
    truncated = False

    for material in materials:
        if material.status != "processed" or not material.extracted_text:
            continue
        if remaining <= 0:
            truncated = True
            break
        text = material.extracted_text
        if len(text) > remaining:
            text = clip_text(text, remaining)
            truncated = True
        documents.append((material.id, text))
        material_ids.append(material.id)
        remaining -= len(text)

    if not documents:
        return PackedMaterials(text="", material_ids=[], truncated=False)

    return PackedMaterials(
        text=pack_documents(documents),
        material_ids=material_ids,
        truncated=truncated,
    )
