"""
Chunker - Divide el texto de una fuente de conocimiento en chunks.

Este módulo se encarga de:
1. Partir el texto crudo en bloques de tamaño fijo (por caracteres)
2. Asignar a cada chunk su índice de posición dentro de la fuente
3. Generar ids derivados de (fuente, posición) para que el resultado
   sea determinista

La partición no tiene overlap ni recorta espacios: concatenar los chunks
en orden de índice reproduce exactamente el texto original.
"""

from typing import List

from agent.domain import KnowledgeChunk

DEFAULT_CHUNK_SIZE = 1000


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """
    Divide un texto en bloques contiguos de ``chunk_size`` caracteres.

    Args:
        text: Texto a dividir
        chunk_size: Tamaño de cada chunk en caracteres (default: 1000)

    Returns:
        Lista de chunks; el último puede ser más corto. Texto vacío → [].
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size debe ser positivo: {chunk_size}")

    if not text:
        return []

    return [text[start : start + chunk_size] for start in range(0, len(text), chunk_size)]


def chunk_id(source_id: str, index: int) -> str:
    return f"{source_id}:{index}"


def build_chunks(
    source_id: str, text: str, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> List[KnowledgeChunk]:
    """
    Genera los KnowledgeChunk de una fuente.

    Se llama cada vez que cambia el raw_text de la fuente; el set
    anterior se reemplaza completo.
    """
    return [
        KnowledgeChunk(
            id=chunk_id(source_id, index),
            source_id=source_id,
            index=index,
            content=content,
        )
        for index, content in enumerate(chunk_text(text, chunk_size))
    ]
