# ludus/repositories/base_repository.py
"""
Base Repository Pattern for the LUDUS backend

Separates data access from business logic. Repositories never commit:
transactions belong to the service layer.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Common CRUD operations for one model.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def get_by_id(self, id: str, *, for_update: bool = False) -> Optional[T]:
        """
        Retrieve an entity by its primary key.

        ``for_update`` takes a row lock on backends that support it so that two
        concurrent status changes on the same row serialize.
        """
        try:
            query = self.db.query(self.model).filter(self.model.id == id)  # type: ignore[attr-defined]
            if for_update and self.db.bind is not None and self.db.bind.dialect.name != "sqlite":
                query = query.with_for_update()
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def create(self, **kwargs: Any) -> T:
        """
        Create a new entity.

        Note: Does NOT commit. The id is available after the flush.
        """
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError as exc:
            self.logger.error("Integrity error creating %s: %s", self.model.__name__, exc)
            self.db.rollback()
            raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating {self.model.__name__}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}")
