import datetime as dt
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from enhancer.data.profiles import spend_in
from enhancer.data.schema import utc_now_iso

IMAGE_COLUMNS = "id, user_id, original_url, enhanced_url, prompt_label, mode, likes, created_at"


class CreditRaceLost(Exception):
    """The conditional decrement matched no row; a concurrent request spent the last credit."""

    def __init__(self, user_id: str, kind: str):
        super().__init__(f"no {kind} credit left for {user_id}")
        self.user_id = user_id
        self.kind = kind


@dataclass(frozen=True)
class ImageRecord:
    user_id: str
    original_url: str
    enhanced_url: str
    prompt_label: Optional[str] = None
    mode: str = "basic"
    likes: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ImageRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            original_url=row["original_url"],
            enhanced_url=row["enhanced_url"],
            prompt_label=row["prompt_label"],
            mode=row["mode"] or "basic",
            likes=int(row["likes"] or 0),
            created_at=row["created_at"],
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "originalUrl": self.original_url,
            "enhancedUrl": self.enhanced_url,
            "promptLabel": self.prompt_label,
            "mode": self.mode,
            "likes": self.likes,
            "createdAt": self.created_at,
        }


class ImageStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def record_enhancement(
        self, image: ImageRecord, spend: str | None, now: dt.datetime | None = None
    ) -> ImageRecord:
        """Spend one credit of kind `spend` and insert `image` in one transaction.

        Raises CreditRaceLost (and writes nothing) when the decrement matches no row.
        Database errors propagate; the caller can't tell whether the commit landed.
        """
        with self.engine.begin() as conn:
            if spend and not spend_in(conn, image.user_id, spend, utc_now_iso(now)):
                raise CreditRaceLost(image.user_id, spend)
            conn.execute(
                text(
                    f"INSERT INTO images ({IMAGE_COLUMNS}) VALUES "
                    "(:id, :uid, :orig, :enh, :label, :mode, :likes, :created)"
                ),
                {
                    "id": image.id,
                    "uid": image.user_id,
                    "orig": image.original_url,
                    "enh": image.enhanced_url,
                    "label": image.prompt_label,
                    "mode": image.mode,
                    "likes": image.likes,
                    "created": image.created_at,
                },
            )
        return image

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with self.engine.begin() as conn:
            row = (
                conn.execute(
                    text(f"SELECT {IMAGE_COLUMNS} FROM images WHERE id = :id"), {"id": image_id}
                )
                .mappings()
                .first()
            )
        return ImageRecord.from_row(row) if row else None

    def list_for_user(self, user_id: str, limit: int = 100) -> List[ImageRecord]:
        with self.engine.begin() as conn:
            rows = (
                conn.execute(
                    text(
                        f"SELECT {IMAGE_COLUMNS} FROM images WHERE user_id = :uid "
                        "ORDER BY created_at DESC LIMIT :limit"
                    ),
                    {"uid": user_id, "limit": int(limit)},
                )
                .mappings()
                .all()
            )
        return [ImageRecord.from_row(r) for r in rows]

    def delete_owned(self, image_id: str, user_id: str) -> Optional[ImageRecord]:
        """Delete an image only if `user_id` owns it. Returns the deleted record."""
        with self.engine.begin() as conn:
            row = (
                conn.execute(
                    text(f"SELECT {IMAGE_COLUMNS} FROM images WHERE id = :id AND user_id = :uid"),
                    {"id": image_id, "uid": user_id},
                )
                .mappings()
                .first()
            )
            if not row:
                return None
            conn.execute(
                text("DELETE FROM images WHERE id = :id AND user_id = :uid"),
                {"id": image_id, "uid": user_id},
            )
        return ImageRecord.from_row(row)

    def count_ai_for_user(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            n = conn.execute(
                text("SELECT COUNT(*) FROM images WHERE user_id = :uid AND mode = 'ai'"),
                {"uid": user_id},
            ).scalar()
        return int(n or 0)

    def older_than(self, cutoff_iso: str) -> List[ImageRecord]:
        with self.engine.begin() as conn:
            rows = (
                conn.execute(
                    text(
                        f"SELECT {IMAGE_COLUMNS} FROM images WHERE created_at < :cutoff "
                        "ORDER BY created_at"
                    ),
                    {"cutoff": cutoff_iso},
                )
                .mappings()
                .all()
            )
        return [ImageRecord.from_row(r) for r in rows]

    def delete(self, image_id: str) -> bool:
        with self.engine.begin() as conn:
            res = conn.execute(text("DELETE FROM images WHERE id = :id"), {"id": image_id})
            return (res.rowcount or 0) > 0

    def count(self) -> int:
        with self.engine.begin() as conn:
            n = conn.execute(text("SELECT COUNT(*) FROM images")).scalar()
        return int(n or 0)
