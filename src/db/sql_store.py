"""DocumentBackend for the StoreHub implemented using SQLAlchemy"""

from copy import deepcopy
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.db.schema import DBDocument


class SQLDocuments:
    """Documents stored as JSON rows, so rooms survive a restart of the hub."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def get_document(self, collection: str, name: str) -> Any:
        document_db = self._fetch_document(collection, name)
        if document_db:
            return deepcopy(document_db.value)
        return None

    def put_document(self, collection: str, name: str, value: Any) -> None:
        document_db = self._fetch_document(collection, name)
        if value is None:
            if document_db:
                self.db.delete(document_db)
                self.db.commit()
            return

        if document_db is None:
            document_db = DBDocument(collection=collection, name=name, value=deepcopy(value))
            self.db.add(document_db)
        else:
            # assign a fresh object: in-place changes of a JSON column are not tracked
            document_db.value = deepcopy(value)
        self.db.commit()

    def list_documents(self, collection: str) -> dict[str, Any]:
        query = (
            select(DBDocument)
            .where(DBDocument.collection == collection)
            .order_by(DBDocument.name)
        )
        return {row.name: deepcopy(row.value) for row in self.db.scalars(query)}

    def _fetch_document(self, collection: str, name: str) -> DBDocument | None:
        query = select(DBDocument).where(
            DBDocument.collection == collection, DBDocument.name == name
        )
        return self.db.scalar(query)
