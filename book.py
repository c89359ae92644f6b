from __future__ import annotations


class Book:
    """A catalog entry together with its stock counters."""

    def __init__(self, title: str, author: str, stock: int = 0, available_stock: int | None = None,
                 id: str | None = None, year: int | None = None, category: str | None = None,
                 description: str | None = None, pages: int | None = None, cover_url: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.year = year
        self.category = category
        self.description = description
        self.pages = pages
        self.stock = stock
        self.available_stock = stock if available_stock is None else available_stock
        self.cover_url = cover_url
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:
        return f"{self.title} by {self.author} ({self.available_stock}/{self.stock} available)"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "year": self.year,
            "category": self.category,
            "description": self.description,
            "pages": self.pages,
            "stock": self.stock,
            "availableStock": self.available_stock,
            "coverUrl": self.cover_url,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data.get("title") or "",
            author=data.get("author") or "",
            year=data.get("year"),
            category=data.get("category"),
            description=data.get("description"),
            pages=data.get("pages"),
            stock=int(data.get("stock") or 0),
            available_stock=int(data.get("availableStock") or 0),
            cover_url=data.get("coverUrl"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )
