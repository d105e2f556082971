import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from .models import (
    Actor,
    CharacterLibraryEntry,
    Frame,
    FrameHistoryVersion,
    FrameOrderEntry,
    Generation,
    Project,
    Scene,
    Shot,
    UsageLedgerEntry,
)

COST_QUANTUM = Decimal("0.0001")


def _repo_root() -> Path:
    # previz/production/store.py -> previz/production -> previz -> repo root
    return Path(__file__).resolve().parents[2]


def default_db_path() -> Path:
    return _repo_root() / "data" / "previz.db"


def quantize_cost(cost: Any) -> Decimal:
    return Decimal(str(cost)).quantize(COST_QUANTUM)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  name TEXT NOT NULL,
  visual_style TEXT NOT NULL DEFAULT '',
  brand_id TEXT,
  created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS scenes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  scene_order INTEGER NOT NULL,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL DEFAULT 'draft',    -- draft/planned/shot
  created_at REAL NOT NULL,
  UNIQUE(project_id, scene_order),
  FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS shots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  scene_id INTEGER NOT NULL,
  shot_order INTEGER NOT NULL,
  visual_description TEXT NOT NULL DEFAULT '',
  camera_angle TEXT NOT NULL DEFAULT '',
  movement TEXT NOT NULL DEFAULT '',
  lighting TEXT NOT NULL DEFAULT '',
  lens TEXT NOT NULL DEFAULT '',
  audio_description TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL DEFAULT 'planned',
  created_at REAL NOT NULL,
  UNIQUE(scene_id, shot_order),
  FOREIGN KEY(scene_id) REFERENCES scenes(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS generations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  shot_id INTEGER NOT NULL,
  project_id INTEGER NOT NULL,
  image_url TEXT NOT NULL,
  prompt TEXT NOT NULL,
  model TEXT NOT NULL,
  quality_tier TEXT NOT NULL DEFAULT 'fast',
  cost TEXT NOT NULL,                      -- decimal string, 4 places
  created_at REAL NOT NULL,
  FOREIGN KEY(shot_id) REFERENCES shots(id) ON DELETE CASCADE,
  FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_generations_shot ON generations(shot_id, created_at);

CREATE TABLE IF NOT EXISTS character_library (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  name TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  reference_image_url TEXT,
  created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS frames (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  shot_number INTEGER NOT NULL,
  image_url TEXT NOT NULL,
  prompt TEXT NOT NULL DEFAULT '',
  character_library_id INTEGER,
  character_appearance TEXT,               -- JSON: clothing/expression/pose/accessories
  consistency_score REAL,                  -- 0-100
  consistency_notes TEXT,
  is_consistency_locked INTEGER NOT NULL DEFAULT 0,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  UNIQUE(project_id, shot_number),
  FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE,
  FOREIGN KEY(character_library_id) REFERENCES character_library(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS actors (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  project_id INTEGER NOT NULL,
  name TEXT NOT NULL,
  trigger_word TEXT NOT NULL,
  dataset_url TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',  -- pending/training/ready/failed
  training_job_id TEXT,
  model_handle TEXT,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_actors_user ON actors(user_id);
CREATE INDEX IF NOT EXISTS idx_actors_job ON actors(training_job_id);

CREATE TABLE IF NOT EXISTS shot_actors (
  shot_id INTEGER NOT NULL,
  actor_id INTEGER NOT NULL,
  created_at REAL NOT NULL,
  PRIMARY KEY(shot_id, actor_id),
  FOREIGN KEY(shot_id) REFERENCES shots(id) ON DELETE CASCADE,
  FOREIGN KEY(actor_id) REFERENCES actors(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS usage_ledger (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  user_id TEXT NOT NULL,
  action_type TEXT NOT NULL,               -- SCRIPT_ANALYSIS/SHOT_GENERATION/IMAGE_GENERATION/MODEL_TRAINING
  model_id TEXT NOT NULL,
  quantity INTEGER NOT NULL DEFAULT 1,
  cost TEXT NOT NULL,                      -- decimal string, 4 places
  timestamp REAL NOT NULL,
  FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_ledger_project ON usage_ledger(project_id);

CREATE TABLE IF NOT EXISTS frame_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  shot_number INTEGER NOT NULL,
  version_number INTEGER NOT NULL,
  is_active INTEGER NOT NULL DEFAULT 0,
  image_url TEXT NOT NULL,
  prompt TEXT,
  notes TEXT,
  created_at REAL NOT NULL,
  UNIQUE(project_id, shot_number, version_number),
  FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_history_single_active
  ON frame_history(project_id, shot_number) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS frame_order (
  project_id INTEGER NOT NULL,
  shot_number INTEGER NOT NULL,
  display_order INTEGER NOT NULL,
  FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_frame_order_project ON frame_order(project_id, display_order);
"""


@dataclass
class StudioStore:
    """
    SQLite persistence for every production entity.

    One connection is shared across threads; all statements run under a
    re-entrant lock and multi-statement writes go through `transaction()`.
    """

    db_path: Path
    conn: sqlite3.Connection
    _lock: Any = field(default_factory=threading.RLock, repr=False)
    _tx_depth: int = field(default=0, repr=False)

    @classmethod
    def open(cls, db_path: Optional[os.PathLike] = None) -> "StudioStore":
        path = Path(db_path) if db_path is not None else default_db_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA busy_timeout=5000;")

        store = cls(db_path=path, conn=conn)
        store._ensure_schema()
        return store

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _ensure_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute("INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?)", ("schema_version", "1"))

    def _now(self) -> float:
        return time.time()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator["StudioStore"]:
        """
        All-or-nothing block. Nested calls join the outermost transaction.
        BEGIN IMMEDIATE takes the write lock up front so read-then-write
        sequences inside the block cannot interleave with other writers.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._tx_depth = 0
                self.conn.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            self.conn.execute("COMMIT")

    # --- projects ---
    def create_project(self, user_id: str, name: str, visual_style: str = "", brand_id: Optional[str] = None) -> Project:
        ts = self._now()
        cur = self._execute(
            "INSERT INTO projects(user_id, name, visual_style, brand_id, created_at) VALUES(?, ?, ?, ?, ?)",
            (str(user_id), name, visual_style or "", brand_id, ts),
        )
        return Project(id=cur.lastrowid, user_id=str(user_id), name=name, visual_style=visual_style or "", brand_id=brand_id, created_at=ts)

    def get_project(self, project_id: int) -> Optional[Project]:
        row = self._fetchone("SELECT * FROM projects WHERE id=?", (project_id,))
        return Project.from_row(row) if row else None

    def delete_project(self, project_id: int) -> bool:
        cur = self._execute("DELETE FROM projects WHERE id=?", (project_id,))
        return cur.rowcount > 0

    # --- scenes ---
    def get_scene(self, scene_id: int) -> Optional[Scene]:
        row = self._fetchone("SELECT * FROM scenes WHERE id=?", (scene_id,))
        return Scene.from_row(row) if row else None

    def list_scenes(self, project_id: int) -> List[Scene]:
        rows = self._fetchall("SELECT * FROM scenes WHERE project_id=? ORDER BY scene_order ASC", (project_id,))
        return [Scene.from_row(r) for r in rows]

    def max_scene_order(self, project_id: int) -> int:
        row = self._fetchone("SELECT COALESCE(MAX(scene_order), 0) AS mx FROM scenes WHERE project_id=?", (project_id,))
        return int(row["mx"])

    def insert_scenes(self, project_id: int, scenes: Iterable[Dict[str, Any]], status: str = "draft") -> List[Scene]:
        """Insert pre-ordered scene dicts ({order, title, description}) in one transaction."""
        out: List[Scene] = []
        ts = self._now()
        with self.transaction():
            for s in scenes:
                cur = self.conn.execute(
                    "INSERT INTO scenes(project_id, scene_order, title, description, status, created_at) VALUES(?, ?, ?, ?, ?, ?)",
                    (project_id, int(s["order"]), s["title"], s.get("description") or "", status, ts),
                )
                out.append(Scene(id=cur.lastrowid, project_id=project_id, order=int(s["order"]), title=s["title"], description=s.get("description") or "", status=status))
        return out

    def update_scene_status(self, scene_id: int, status: str) -> bool:
        cur = self._execute("UPDATE scenes SET status=? WHERE id=?", (status, scene_id))
        return cur.rowcount > 0

    # --- shots ---
    def get_shot(self, shot_id: int) -> Optional[Shot]:
        row = self._fetchone("SELECT * FROM shots WHERE id=?", (shot_id,))
        return Shot.from_row(row) if row else None

    def list_shots(self, scene_id: int) -> List[Shot]:
        rows = self._fetchall("SELECT * FROM shots WHERE scene_id=? ORDER BY shot_order ASC", (scene_id,))
        return [Shot.from_row(r) for r in rows]

    def list_project_shots(self, project_id: int) -> List[Shot]:
        rows = self._fetchall(
            """
            SELECT sh.* FROM shots sh
            JOIN scenes sc ON sc.id = sh.scene_id
            WHERE sc.project_id = ?
            ORDER BY sc.scene_order ASC, sh.shot_order ASC
            """,
            (project_id,),
        )
        return [Shot.from_row(r) for r in rows]

    def max_shot_order(self, scene_id: int) -> int:
        row = self._fetchone("SELECT COALESCE(MAX(shot_order), 0) AS mx FROM shots WHERE scene_id=?", (scene_id,))
        return int(row["mx"])

    def insert_shots(self, scene_id: int, shots: Iterable[Dict[str, Any]], status: str = "planned") -> List[Shot]:
        cols = ("visual_description", "camera_angle", "movement", "lighting", "lens", "audio_description")
        out: List[Shot] = []
        ts = self._now()
        with self.transaction():
            for s in shots:
                values = [s.get(c) or "" for c in cols]
                cur = self.conn.execute(
                    f"""
                    INSERT INTO shots(scene_id, shot_order, {", ".join(cols)}, status, created_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (scene_id, int(s["order"]), *values, status, ts),
                )
                out.append(Shot(cur.lastrowid, scene_id, int(s["order"]), *values, status=status))
        return out

    # --- generations ---
    def add_generation(
        self,
        shot_id: int,
        project_id: int,
        image_url: str,
        prompt: str,
        model: str,
        cost: Any,
        quality_tier: str = "fast",
    ) -> Generation:
        ts = self._now()
        amount = quantize_cost(cost)
        cur = self._execute(
            """
            INSERT INTO generations(shot_id, project_id, image_url, prompt, model, quality_tier, cost, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (shot_id, project_id, image_url, prompt, model, quality_tier, str(amount), ts),
        )
        return Generation(cur.lastrowid, shot_id, project_id, image_url, prompt, model, quality_tier, amount, ts)

    def get_generation(self, generation_id: int) -> Optional[Generation]:
        row = self._fetchone("SELECT * FROM generations WHERE id=?", (generation_id,))
        return Generation.from_row(row) if row else None

    def latest_generation(self, shot_id: int) -> Optional[Generation]:
        row = self._fetchone(
            "SELECT * FROM generations WHERE shot_id=? ORDER BY created_at DESC, id DESC LIMIT 1",
            (shot_id,),
        )
        return Generation.from_row(row) if row else None

    # --- character library ---
    def create_character(self, user_id: str, name: str, description: str = "", reference_image_url: Optional[str] = None) -> CharacterLibraryEntry:
        cur = self._execute(
            "INSERT INTO character_library(user_id, name, description, reference_image_url, created_at) VALUES(?, ?, ?, ?, ?)",
            (str(user_id), name, description or "", reference_image_url, self._now()),
        )
        return CharacterLibraryEntry(cur.lastrowid, str(user_id), name, description or "", reference_image_url)

    def get_character(self, character_id: int) -> Optional[CharacterLibraryEntry]:
        row = self._fetchone("SELECT * FROM character_library WHERE id=?", (character_id,))
        return CharacterLibraryEntry.from_row(row) if row else None

    def get_characters(self, character_ids: Iterable[int]) -> Dict[int, CharacterLibraryEntry]:
        ids = list(character_ids)
        if not ids:
            return {}
        qmarks = ",".join(["?"] * len(ids))
        rows = self._fetchall(f"SELECT * FROM character_library WHERE id IN ({qmarks})", ids)
        return {r["id"]: CharacterLibraryEntry.from_row(r) for r in rows}

    # --- frames ---
    def upsert_frame(self, project_id: int, shot_number: int, image_url: str, prompt: str = "") -> Frame:
        ts = self._now()
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO frames(project_id, shot_number, image_url, prompt, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, shot_number)
                DO UPDATE SET image_url=excluded.image_url, prompt=excluded.prompt, updated_at=excluded.updated_at
                """,
                (project_id, shot_number, image_url, prompt or "", ts, ts),
            )
            return self.get_frame_by_shot(project_id, shot_number)

    def get_frame(self, frame_id: int) -> Optional[Frame]:
        row = self._fetchone("SELECT * FROM frames WHERE id=?", (frame_id,))
        return Frame.from_row(row) if row else None

    def get_frame_by_shot(self, project_id: int, shot_number: int) -> Optional[Frame]:
        row = self._fetchone("SELECT * FROM frames WHERE project_id=? AND shot_number=?", (project_id, shot_number))
        return Frame.from_row(row) if row else None

    def list_frames(self, project_id: int, character_library_id: Optional[int] = None) -> List[Frame]:
        conditions = ["project_id = ?"]
        params: List[Any] = [project_id]
        if character_library_id is not None:
            conditions.append("character_library_id = ?")
            params.append(character_library_id)
        where = " AND ".join(conditions)
        rows = self._fetchall(f"SELECT * FROM frames WHERE {where} ORDER BY shot_number ASC", params)
        return [Frame.from_row(r) for r in rows]

    def update_unlocked_frame(self, frame_id: int, values: Dict[str, Any]) -> bool:
        """Apply `values` only while the frame is unlocked. Returns False if nothing was updated."""
        assignments = ", ".join(f"{col}=?" for col in values)
        cur = self._execute(
            f"UPDATE frames SET {assignments}, updated_at=? WHERE id=? AND is_consistency_locked=0",
            (*values.values(), self._now(), frame_id),
        )
        return cur.rowcount > 0

    def update_frame(self, frame_id: int, values: Dict[str, Any]) -> bool:
        assignments = ", ".join(f"{col}=?" for col in values)
        cur = self._execute(
            f"UPDATE frames SET {assignments}, updated_at=? WHERE id=?",
            (*values.values(), self._now(), frame_id),
        )
        return cur.rowcount > 0

    # --- actors ---
    def insert_actor(self, user_id: str, project_id: int, name: str, trigger_word: str, dataset_url: str) -> Actor:
        ts = self._now()
        cur = self._execute(
            """
            INSERT INTO actors(user_id, project_id, name, trigger_word, dataset_url, status, created_at, updated_at)
            VALUES(?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (str(user_id), project_id, name, trigger_word, dataset_url, ts, ts),
        )
        return Actor(cur.lastrowid, str(user_id), project_id, name, trigger_word, dataset_url, "pending", created_at=ts, updated_at=ts)

    def get_actor(self, actor_id: int) -> Optional[Actor]:
        row = self._fetchone("SELECT * FROM actors WHERE id=?", (actor_id,))
        return Actor.from_row(row) if row else None

    def get_actor_by_job(self, training_job_id: str) -> Optional[Actor]:
        row = self._fetchone("SELECT * FROM actors WHERE training_job_id=?", (training_job_id,))
        return Actor.from_row(row) if row else None

    def list_actors(self, user_id: str) -> List[Actor]:
        rows = self._fetchall("SELECT * FROM actors WHERE user_id=? ORDER BY created_at ASC, id ASC", (str(user_id),))
        return [Actor.from_row(r) for r in rows]

    def compare_and_set_actor_status(self, actor_id: int, expected: str, new: str, **values: Any) -> bool:
        """Move the actor from `expected` to `new` (plus extra columns). False if the row was not in `expected`."""
        extra = "".join(f", {col}=?" for col in values)
        cur = self._execute(
            f"UPDATE actors SET status=?{extra}, updated_at=? WHERE id=? AND status=?",
            (new, *values.values(), self._now(), actor_id, expected),
        )
        return cur.rowcount > 0

    # --- shot actors ---
    def bind_actor(self, shot_id: int, actor_id: int) -> bool:
        cur = self._execute(
            "INSERT OR IGNORE INTO shot_actors(shot_id, actor_id, created_at) VALUES(?, ?, ?)",
            (shot_id, actor_id, self._now()),
        )
        return cur.rowcount > 0

    def unbind_actor(self, shot_id: int, actor_id: int) -> bool:
        cur = self._execute("DELETE FROM shot_actors WHERE shot_id=? AND actor_id=?", (shot_id, actor_id))
        return cur.rowcount > 0

    def list_shot_actors(self, shot_id: int) -> List[Actor]:
        rows = self._fetchall(
            """
            SELECT a.* FROM shot_actors sa
            JOIN actors a ON a.id = sa.actor_id
            WHERE sa.shot_id = ?
            ORDER BY sa.created_at ASC, a.id ASC
            """,
            (shot_id,),
        )
        return [Actor.from_row(r) for r in rows]

    # --- usage ledger ---
    def insert_ledger_entry(
        self,
        project_id: int,
        user_id: str,
        action_type: str,
        model_id: str,
        quantity: int,
        cost: Decimal,
    ) -> UsageLedgerEntry:
        ts = self._now()
        cur = self._execute(
            """
            INSERT INTO usage_ledger(project_id, user_id, action_type, model_id, quantity, cost, timestamp)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (project_id, str(user_id), action_type, model_id, int(quantity), str(cost), ts),
        )
        return UsageLedgerEntry(cur.lastrowid, project_id, str(user_id), action_type, model_id, int(quantity), cost, ts)

    def list_ledger_entries(self, project_id: int) -> List[UsageLedgerEntry]:
        rows = self._fetchall("SELECT * FROM usage_ledger WHERE project_id=? ORDER BY timestamp ASC, id ASC", (project_id,))
        return [UsageLedgerEntry.from_row(r) for r in rows]

    def ledger_costs(self, project_id: int) -> List[str]:
        return [r["cost"] for r in self._fetchall("SELECT cost FROM usage_ledger WHERE project_id=?", (project_id,))]

    # --- frame history ---
    def max_version_number(self, project_id: int, shot_number: int) -> int:
        row = self._fetchone(
            "SELECT COALESCE(MAX(version_number), 0) AS mx FROM frame_history WHERE project_id=? AND shot_number=?",
            (project_id, shot_number),
        )
        return int(row["mx"])

    def deactivate_versions(self, project_id: int, shot_number: int) -> None:
        self._execute(
            "UPDATE frame_history SET is_active=0 WHERE project_id=? AND shot_number=? AND is_active=1",
            (project_id, shot_number),
        )

    def insert_version(
        self,
        project_id: int,
        shot_number: int,
        version_number: int,
        image_url: str,
        prompt: Optional[str],
        notes: Optional[str],
    ) -> FrameHistoryVersion:
        ts = self._now()
        cur = self._execute(
            """
            INSERT INTO frame_history(project_id, shot_number, version_number, is_active, image_url, prompt, notes, created_at)
            VALUES(?, ?, ?, 1, ?, ?, ?, ?)
            """,
            (project_id, shot_number, version_number, image_url, prompt, notes, ts),
        )
        return FrameHistoryVersion(cur.lastrowid, project_id, shot_number, version_number, True, image_url, prompt, notes, ts)

    def list_versions(self, project_id: int, shot_number: int) -> List[FrameHistoryVersion]:
        rows = self._fetchall(
            "SELECT * FROM frame_history WHERE project_id=? AND shot_number=? ORDER BY version_number ASC",
            (project_id, shot_number),
        )
        return [FrameHistoryVersion.from_row(r) for r in rows]

    def get_active_version(self, project_id: int, shot_number: int) -> Optional[FrameHistoryVersion]:
        row = self._fetchone(
            "SELECT * FROM frame_history WHERE project_id=? AND shot_number=? AND is_active=1",
            (project_id, shot_number),
        )
        return FrameHistoryVersion.from_row(row) if row else None

    def set_version_active(self, project_id: int, shot_number: int, version_number: int) -> bool:
        cur = self._execute(
            "UPDATE frame_history SET is_active=1 WHERE project_id=? AND shot_number=? AND version_number=?",
            (project_id, shot_number, version_number),
        )
        return cur.rowcount > 0

    # --- frame order ---
    def replace_frame_order(self, project_id: int, entries: Sequence[FrameOrderEntry]) -> None:
        with self.transaction():
            self.conn.execute("DELETE FROM frame_order WHERE project_id=?", (project_id,))
            self.conn.executemany(
                "INSERT INTO frame_order(project_id, shot_number, display_order) VALUES(?, ?, ?)",
                [(project_id, e.shot_number, e.display_order) for e in entries],
            )

    def list_frame_order(self, project_id: int) -> List[FrameOrderEntry]:
        rows = self._fetchall(
            "SELECT * FROM frame_order WHERE project_id=? ORDER BY display_order ASC, shot_number ASC",
            (project_id,),
        )
        return [FrameOrderEntry(r["project_id"], r["shot_number"], r["display_order"]) for r in rows]
