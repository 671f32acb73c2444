"""Create the business data store and load a few demo records."""

import sqlite3
from datetime import datetime, timedelta, timezone

from shelterops.services.datastore import SCHEMA
from shelterops.settings import get_settings


def init_database() -> None:
    """Initialize database schema and load demo data when empty."""
    db_path = get_settings().db_sqlite_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()

    try:
        for statement in SCHEMA:
            cur.execute(statement)

        cur.execute("SELECT COUNT(*) FROM municipalities")
        if cur.fetchone()[0]:
            print(f"Database already initialized: {db_path}")
            return

        municipalities = [
            ("mun_001", "São Paulo", "SP"),
            ("mun_002", "Campinas", "SP"),
            ("mun_003", "Curitiba", "PR"),
        ]
        cur.executemany(
            "INSERT INTO municipalities (id, name, state) VALUES (?, ?, ?)",
            municipalities,
        )

        now = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        animals = [
            ("ani_001", "Thor", "CANINO", "GRANDE", "DISPONIVEL", "mun_001", 1),
            ("ani_002", "Mel", "CANINO", "MEDIO", "DISPONIVEL", "mun_001", 3),
            ("ani_003", "Luna", "FELINO", "PEQUENO", "DISPONIVEL", "mun_002", 5),
            ("ani_004", "Bob", "CANINO", "PEQUENO", "ADOTADO", "mun_002", 20),
            ("ani_005", "Mia", "FELINO", "PEQUENO", "EM_TRATAMENTO", "mun_003", 2),
            ("ani_006", "Paçoca", "CANINO", "MEDIO", "DISPONIVEL", "mun_003", 8),
        ]
        cur.executemany(
            """
            INSERT INTO animals (id, name, species, size, status, municipality_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (*row[:6], (now - timedelta(days=row[6])).isoformat(timespec="seconds"))
                for row in animals
            ],
        )

        conn.commit()
        print(f"Database initialized: {db_path}")
        print(f"  - Municipalities: {len(municipalities)}")
        print(f"  - Animals: {len(animals)}")

    finally:
        cur.close()
        conn.close()


if __name__ == "__main__":
    init_database()
