"""
Script para inicializar la base de datos SQLite del servicio de chat.
Crea el schema y carga agentes, personas, fuentes de conocimiento y
configs de widget desde un archivo JSON de seed.

Uso:
    python scripts/utils/init_db.py [ruta/al/seed.json]
"""

import json
import sys
from pathlib import Path

# El script está en scripts/utils/, el proyecto está 2 niveles arriba
project_root = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(project_root))

from agent.db_service import ChatRepository, SQLiteRepository
from agent.domain import Agent, Persona, WidgetConfig
from api.config import get_settings

DEFAULT_SEED_PATH = project_root / "database" / "seeds" / "seed.json"


def load_seed(repository: ChatRepository, seed: dict) -> dict:
    """
    Carga el contenido del seed en el repositorio.

    Las fuentes de conocimiento se guardan antes que los agentes y sus
    chunks se regeneran con el CHUNK_SIZE del repositorio.

    Returns:
        Conteo de registros cargados por tipo
    """
    counts = {"personas": 0, "knowledge_sources": 0, "agents": 0, "widget_configs": 0}

    for data in seed.get("personas", []):
        repository.save_persona(Persona.model_validate(data))
        counts["personas"] += 1

    for data in seed.get("knowledge_sources", []):
        repository.save_knowledge_source(
            source_id=data["id"],
            workspace_id=data["workspace_id"],
            raw_text=data.get("raw_text", ""),
            name=data.get("name"),
        )
        counts["knowledge_sources"] += 1

    for data in seed.get("agents", []):
        repository.save_agent(Agent.model_validate(data))
        counts["agents"] += 1

    for data in seed.get("widget_configs", []):
        repository.save_widget_config(WidgetConfig.model_validate(data))
        counts["widget_configs"] += 1

    return counts


def init_database(seed_path: Path = DEFAULT_SEED_PATH):
    """Inicializa la base de datos con schema y seed data"""
    settings = get_settings()
    db_path = settings.db_full_path

    # Si la DB ya existe, preguntar antes de sobrescribir
    if db_path.exists():
        print(f"⚠️  La base de datos ya existe en {db_path}")
        response = input("¿Deseas recrearla? Esto borrará todos los datos (y/n): ")
        if response.lower() != "y":
            print("❌ Operación cancelada")
            return
        db_path.unlink()

    print(f"📦 Creando base de datos en {db_path}")
    repository = SQLiteRepository(db_path, chunk_size=settings.CHUNK_SIZE)

    print(f"🌱 Cargando seed desde {seed_path}...")
    with open(seed_path, "r", encoding="utf-8") as f:
        seed = json.load(f)

    try:
        counts = load_seed(repository, seed)
    except Exception as e:
        print(f"\n❌ Error al inicializar la base de datos: {e}")
        raise

    print("\n✅ Base de datos inicializada correctamente")
    for name, count in counts.items():
        print(f"   - {name}: {count} registros")

    print(f"\n🎉 Inicialización completada. DB: {db_path}")


if __name__ == "__main__":
    init_database(Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_SEED_PATH)
