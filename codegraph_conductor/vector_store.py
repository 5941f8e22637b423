"""Vector store backed by LanceDB: serverless, local-first vector database.

Each embedding model gets its own table (``entity_vectors_{model_key}``) so
vectors of different providers, models or dimensions can never be compared
with each other.  All data stays on disk under the project directory.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import lancedb
import pyarrow as pa
import pyarrow.compute as pc

from .errors import StorageError

logger = logging.getLogger(__name__)

TABLE_PREFIX = "entity_vectors_"
_DELETE_CHUNK = 200
_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_]+")


def table_name_for(model_key: str) -> str:
    return TABLE_PREFIX + _SAFE_KEY_RE.sub("_", model_key)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class VectorStore:
    """LanceDB-backed vector table for one embedding model.

    Schema per row:

    ============ ============ =====================================
    Column       Type         Description
    ============ ============ =====================================
    id           utf8         Entity identifier
    vector       float32[dim] Embedding vector
    file_path    utf8         Owning file (for per-file deletes)
    kind         utf8         Entity kind
    content_hash utf8         Entity content the vector was built from
    ============ ============ =====================================
    """

    def __init__(self, project_dir: Path, model_key: str) -> None:
        self.project_dir = project_dir
        self.model_key = model_key
        self._lance_dir = project_dir / "lancedb"
        self._lance_dir.mkdir(exist_ok=True, parents=True)
        self._table_name = table_name_for(model_key)
        self._db: Any = lancedb.connect(str(self._lance_dir))
        self._table: Optional[Any] = None
        if self._table_name in self._list_tables():
            self._table = self._db.open_table(self._table_name)

    def _list_tables(self) -> List[str]:
        return list(self._db.table_names())

    @property
    def dimension(self) -> Optional[int]:
        """Vector width of the table, or ``None`` while it is empty/missing."""
        if self._table is None:
            return None
        vector_type = self._table.schema.field("vector").type
        return getattr(vector_type, "list_size", None)

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def upsert(self, rows: Sequence[Dict[str, Any]]) -> None:
        """Insert or replace rows keyed by ``id``."""
        if not rows:
            return
        dim = len(rows[0]["vector"])
        try:
            if self._table is None:
                schema = pa.schema([
                    pa.field("id", pa.string()),
                    pa.field("vector", pa.list_(pa.float32(), dim)),
                    pa.field("file_path", pa.string()),
                    pa.field("kind", pa.string()),
                    pa.field("content_hash", pa.string()),
                ])
                self._table = self._db.create_table(self._table_name, schema=schema, mode="overwrite")
            elif self.dimension != dim:
                raise StorageError(
                    f"Vector dimension {dim} does not match table '{self._table_name}' "
                    f"({self.dimension})"
                )
            else:
                self.delete_ids([row["id"] for row in rows])
            self._table.add([dict(row) for row in rows])
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"LanceDB upsert failed: {exc}") from exc

    def delete_ids(self, ids: Sequence[str]) -> None:
        if not ids or self._table is None:
            return
        for i in range(0, len(ids), _DELETE_CHUNK):
            chunk = ids[i: i + _DELETE_CHUNK]
            self._table.delete(f"id IN ({', '.join(_quote(x) for x in chunk)})")

    def clear(self) -> None:
        """Drop all data for this model."""
        if self._table_name in self._list_tables():
            self._db.drop_table(self._table_name)
        self._table = None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: List[float],
        limit: int = 10,
        where_sql: Optional[str] = None,
    ) -> List[Tuple[str, float, str]]:
        """Cosine nearest neighbours as ``(id, similarity, content_hash)``.

        With the cosine metric ``_distance`` is ``1 - cos_sim`` so similarity
        is recovered as ``1 - distance``.
        """
        if self._table is None:
            return []
        try:
            query = (
                self._table
                .search(query_vector)
                .distance_type("cosine")
                .limit(limit)
            )
            if where_sql:
                query = query.where(where_sql)
            rows = query.to_list()
        except Exception as exc:
            logger.warning("LanceDB search failed on '%s': %s", self._table_name, exc)
            raise StorageError(f"Vector search failed: {exc}") from exc
        return [
            (row["id"], 1.0 - float(row.get("_distance", 1.0)), row.get("content_hash", ""))
            for row in rows
        ]

    def get_vectors(self, ids: Sequence[str]) -> Dict[str, List[float]]:
        if not ids or self._table is None:
            return {}
        table = self._table.to_arrow()
        matched = table.filter(pc.is_in(table["id"], value_set=pa.array(list(ids), pa.string())))
        return {
            row["id"]: [float(v) for v in row["vector"]]
            for row in matched.select(["id", "vector"]).to_pylist()
        }

    # ------------------------------------------------------------------
    # Informational
    # ------------------------------------------------------------------

    def count(self) -> int:
        if self._table is None:
            return 0
        return int(self._table.count_rows())

    def list_model_tables(self) -> List[str]:
        return [
            name[len(TABLE_PREFIX):]
            for name in self._list_tables()
            if name.startswith(TABLE_PREFIX)
        ]
