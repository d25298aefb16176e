"""
Background — Tareas fire-and-forget del pipeline.

El camino principal lanza la tarea y sigue; nunca la espera. El runner
guarda referencias a las tareas vivas (para que no las recolecte el GC),
loguea sus errores y permite drenarlas al apagar la app.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Set

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Registro de tareas asyncio lanzadas sin await."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, factory: Callable[[], Awaitable[None]], name: str = None) -> asyncio.Task:
        """
        Lanza la corrutina creada por ``factory`` en el loop actual.

        Debe llamarse desde dentro de un event loop en ejecución.
        """
        task = asyncio.create_task(factory(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Tarea en segundo plano cancelada: {task.get_name()}")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Tarea en segundo plano falló: {task.get_name()}: {exc}",
                exc_info=exc,
            )

    async def drain(self, timeout: float = 10.0) -> None:
        """Espera las tareas pendientes; las que excedan el timeout se cancelan."""
        if not self._tasks:
            return

        tasks = list(self._tasks)
        logger.info(f"Drenando {len(tasks)} tareas en segundo plano...")
        _, pending = await asyncio.wait(tasks, timeout=timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"{len(pending)} tareas canceladas por timeout")
