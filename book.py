from __future__ import annotations


class Book:
    """Represents a single title in the catalog and its lendable copies."""

    def __init__(self, title: str, author: str, isbn: str, copies_available: int = 0,
                 genre: str | None = None, description: str | None = None,
                 published_date: str | None = None, id: int | None = None,
                 is_deleted: bool = False, created_at: str | None = None,
                 updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.copies_available = int(copies_available)
        self.genre = genre
        self.description = description
        self.published_date = published_date
        self.is_deleted = bool(is_deleted)
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    @property
    def is_available(self) -> bool:
        return self.copies_available > 0 and not self.is_deleted

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "copies_available": self.copies_available,
            "genre": self.genre,
            "description": self.description,
            "published_date": self.published_date,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def summary(self) -> dict:
        """Fields embedded in a lending record."""
        return {"id": self.id, "title": self.title, "isbn": self.isbn, "author": self.author}

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            copies_available=data.get("copies_available") or 0,
            genre=data.get("genre"),
            description=data.get("description"),
            published_date=data.get("published_date"),
            is_deleted=bool(data.get("is_deleted") or False),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
