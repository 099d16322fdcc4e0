"""SQLite database operations for the pipeline."""
import sqlite3
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable
from contextlib import contextmanager

from utils.logger import setup_logger
from ingestion.models import BookMetadata, DetectedScene
from extraction.models import Character, CharacterAppearance
import config

logger = setup_logger(__name__)

# Columns callers may change through update_document
DOCUMENT_FIELDS = {
    "title", "author", "language", "isbn", "publisher", "pubdate", "description", "has_cover",
    "status", "failed_stage", "progress_percent", "current_step", "error_message",
    "total_chapters", "total_scenes", "total_characters", "total_words",
    "llm_provider", "llm_model", "embedding_provider", "embedding_model",
}

SCENE_FIELDS = {
    "analysis_json", "analysis_error", "image_prompt",
    "analysis_provider", "analysis_model", "analyzed_at",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Manages SQLite database operations."""

    def __init__(self, db_path: Path = config.DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema_sql)
            conn.commit()

        logger.debug(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    # ==================== Documents ====================

    def insert_document(
        self,
        caller_id: str,
        source_path: str,
        file_hash: str,
        metadata: Optional[BookMetadata] = None,
        title: Optional[str] = None,
    ) -> str:
        """Insert a new document record in the 'uploading' state.

        Args:
            caller_id: Owner of the document
            source_path: Path to the source file
            file_hash: SHA256 hash of the file
            metadata: Book metadata if already known
            title: Title used when metadata is absent

        Returns:
            Document UUID
        """
        document_id = str(uuid.uuid4())
        now = utc_now()
        meta = metadata or BookMetadata(title=title or Path(source_path).stem)

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (
                    id, caller_id, title, author, language, isbn, publisher, pubdate,
                    description, has_cover, source_path, file_hash, status, current_step,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'uploading', 'Uploaded', ?, ?)
                """,
                (
                    document_id, caller_id, meta.title, meta.author, meta.language, meta.isbn,
                    meta.publisher, meta.pubdate, meta.description, int(meta.has_cover),
                    source_path, file_hash, now, now,
                )
            )
            conn.commit()

        logger.info(f"Inserted document: {meta.title} (ID: {document_id})")
        return document_id

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return dict(row) if row else None

    def get_document_by_hash(self, file_hash: str, caller_id: str) -> Optional[Dict[str, Any]]:
        """Find a caller's document with this source hash.

        Args:
            file_hash: SHA256 hash of file
            caller_id: Owner of the document

        Returns:
            Document record dict or None
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE file_hash = ? AND caller_id = ? ORDER BY created_at LIMIT 1",
                (file_hash, caller_id)
            ).fetchone()
            return dict(row) if row else None

    def list_documents(self, caller_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            if caller_id:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE caller_id = ? ORDER BY created_at DESC",
                    (caller_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM documents ORDER BY created_at DESC").fetchall()
            return [dict(row) for row in rows]

    def update_document(self, document_id: str, **fields: Any) -> None:
        """Update document columns.

        Raises:
            ValueError: If a field is not an updatable column
        """
        unknown = set(fields) - DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        if not fields:
            return

        fields["updated_at"] = utc_now()
        assignments = ", ".join(f"{name} = :{name}" for name in fields)

        with self._get_connection() as conn:
            conn.execute(
                f"UPDATE documents SET {assignments} WHERE id = :document_id",
                {**fields, "document_id": document_id}
            )
            conn.commit()

    def set_document_metadata(self, document_id: str, metadata: BookMetadata) -> None:
        self.update_document(
            document_id,
            title=metadata.title,
            author=metadata.author,
            language=metadata.language,
            isbn=metadata.isbn,
            publisher=metadata.publisher,
            pubdate=metadata.pubdate,
            description=metadata.description,
            has_cover=int(metadata.has_cover),
        )

    # ==================== Scenes ====================

    def replace_scenes(
        self,
        document_id: str,
        scenes: List[DetectedScene],
        total_chapters: int,
        total_words: int,
    ) -> int:
        """Replace a document's scenes and counters in one transaction.

        Args:
            document_id: Document UUID
            scenes: Segmented scenes in global order
            total_chapters: Chapters that produced scenes
            total_words: Word count over all chapters

        Returns:
            Number of scenes stored
        """
        now = utc_now()
        rows = []
        for scene in scenes:
            row = scene.to_dict()
            row.update(id=str(uuid.uuid4()), document_id=document_id, created_at=now)
            rows.append(row)

        with self._get_connection() as conn:
            conn.execute("DELETE FROM scenes WHERE document_id = ?", (document_id,))
            conn.executemany(
                """
                INSERT INTO scenes (
                    id, document_id, chapter_number, chapter_title, scene_number, scene_index_global,
                    text, word_count, scene_type, has_dialogue, character_count, created_at
                )
                VALUES (
                    :id, :document_id, :chapter_number, :chapter_title, :scene_number, :scene_index_global,
                    :text, :word_count, :scene_type, :has_dialogue, :character_count, :created_at
                )
                """,
                rows
            )
            conn.execute(
                """
                UPDATE documents
                SET total_scenes = ?, total_chapters = ?, total_words = ?, updated_at = ?
                WHERE id = ?
                """,
                (len(rows), total_chapters, total_words, now, document_id)
            )
            conn.commit()

        logger.info(f"Stored {len(rows)} scenes for document {document_id}")
        return len(rows)

    def get_scenes(
        self,
        document_id: str,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Retrieve scenes in global order, optionally filtered by analysis status.

        The stored analysis is decoded into an ``analysis`` key.
        """
        query = "SELECT * FROM scenes WHERE document_id = ?"
        params: List[Any] = [document_id]
        if statuses is not None:
            statuses = list(statuses)
            query += f" AND analysis_status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        query += " ORDER BY scene_index_global"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._scene_row(row) for row in rows]

    @staticmethod
    def _scene_row(row: sqlite3.Row) -> Dict[str, Any]:
        scene = dict(row)
        raw = scene.pop("analysis_json", None)
        scene["analysis"] = json.loads(raw) if raw else None
        scene["has_dialogue"] = bool(scene["has_dialogue"])
        return scene

    def count_scenes_by_status(self, document_id: str) -> Dict[str, int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT analysis_status, COUNT(*) FROM scenes WHERE document_id = ? GROUP BY analysis_status",
                (document_id,)
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    def transition_scene(
        self,
        scene_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """Move a scene's analysis status only if it is currently in from_statuses.

        Returns:
            True if the row changed
        """
        unknown = set(fields) - SCENE_FIELDS
        if unknown:
            raise ValueError(f"Unknown scene fields: {sorted(unknown)}")

        from_statuses = list(from_statuses)
        assignments = ", ".join(["analysis_status = ?"] + [f"{name} = ?" for name in fields])
        placeholders = ", ".join("?" for _ in from_statuses)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE scenes SET {assignments} WHERE id = ? AND analysis_status IN ({placeholders})",
                [to_status, *fields.values(), scene_id, *from_statuses]
            )
            conn.commit()
            return cursor.rowcount == 1

    # ==================== Characters ====================

    def delete_characters(self, document_id: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM characters WHERE document_id = ?", (document_id,))
            conn.commit()
            return cursor.rowcount

    def insert_character(
        self,
        document_id: str,
        name: str,
        aliases: List[str],
        role: str,
        appearance: CharacterAppearance,
        first_appearance_scene_id: Optional[str],
        total_appearances: int,
    ) -> str:
        """Insert a deduplicated character.

        Returns:
            Character UUID
        """
        character_id = str(uuid.uuid4())
        now = utc_now()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO characters (
                    id, document_id, name, aliases_json, role, appearance_json,
                    first_appearance_scene_id, total_appearances, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    character_id, document_id, name, json.dumps(aliases), role,
                    appearance.model_dump_json(), first_appearance_scene_id,
                    total_appearances, now, now,
                )
            )
            conn.commit()

        logger.debug(f"Created character: {name}")
        return character_id

    def get_characters(self, document_id: str) -> List[Character]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM characters WHERE document_id = ? ORDER BY total_appearances DESC, created_at",
                (document_id,)
            ).fetchall()
        return [self._character_row(row) for row in rows]

    def get_character(self, character_id: str) -> Optional[Character]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM characters WHERE id = ?", (character_id,)).fetchone()
        return self._character_row(row) if row else None

    @staticmethod
    def _character_row(row: sqlite3.Row) -> Character:
        return Character(
            id=row["id"],
            document_id=row["document_id"],
            name=row["name"],
            aliases=json.loads(row["aliases_json"]),
            role=row["role"],
            appearance=CharacterAppearance.model_validate_json(row["appearance_json"]),
            first_appearance_scene_id=row["first_appearance_scene_id"],
            total_appearances=row["total_appearances"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def update_character_appearance(self, character_id: str, appearance: CharacterAppearance) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE characters SET appearance_json = ?, updated_at = ? WHERE id = ?",
                (appearance.model_dump_json(), utc_now(), character_id)
            )
            conn.commit()
            return cursor.rowcount == 1

    def delete_character(self, character_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM characters WHERE id = ?", (character_id,))
            conn.commit()
            return cursor.rowcount == 1
