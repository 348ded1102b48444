# ludus/services/base.py
"""
Base Service Pattern for the LUDUS backend

Provides common functionality for all service classes including:
- Transaction management
- Cache integration
- Performance monitoring
"""

import asyncio
from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

if TYPE_CHECKING:
    from .cache_service import CacheService

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for all service layer components.

    Provides common patterns for:
    - Database session management
    - Caching
    - Performance monitoring
    """

    # Class-level metrics storage
    _class_metrics: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def __init__(self, db: Session, cache: Optional["CacheService"] = None):
        """
        Initialize base service.

        Args:
            db: Database session
            cache: Optional CacheService instance
        """
        self.db = db
        self.cache = cache
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Usage:
            with self.transaction():
                self.db.add(entity)
                # commit is handled on exit
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}")
        except Exception as e:
            self.logger.error(f"Unexpected error in transaction: {str(e)}")
            self.db.rollback()
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Works for both plain and ``async def`` methods.

        Usage:
            @BaseService.measure_operation("transition")
            async def transition(self, ...):
                ...
        """

        def decorator(func: F) -> F:
            def _finish(self: Any, started: float, success: bool, error_type: Optional[str]) -> None:
                elapsed = time.time() - started

                if hasattr(self, "_record_metric"):
                    self._record_metric(operation_name, elapsed, success)

                if elapsed > SLOW_OPERATION_SECONDS and hasattr(self, "logger"):
                    self.logger.warning(
                        f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                    )

                prometheus_metrics.record_service_operation(
                    service=self.__class__.__name__,
                    operation=operation_name,
                    duration=elapsed,
                    status="success" if success else "error",
                    error_type=error_type,
                )

            if asyncio.iscoroutinefunction(func):

                @wraps(func)
                async def async_wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                    started = time.time()
                    success = False
                    error_type = None
                    try:
                        result = await func(self, *args, **kwargs)
                        success = True
                        return result
                    except Exception as e:
                        error_type = type(e).__name__
                        raise
                    finally:
                        _finish(self, started, success, error_type)

                return cast(F, async_wrapper)

            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                started = time.time()
                success = False
                error_type = None
                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    _finish(self, started, success, error_type)

            return cast(F, wrapper)

        return decorator

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        """
        Record performance metrics.

        Args:
            operation: Operation name
            elapsed: Time taken in seconds
            success: Whether operation succeeded
        """
        class_name = self.__class__.__name__
        metrics = BaseService._class_metrics.setdefault(class_name, {})

        if operation not in metrics:
            metrics[operation] = {
                "count": 0,
                "total_time": 0.0,
                "success_count": 0,
                "failure_count": 0,
                "min_time": float("inf"),
                "max_time": 0.0,
            }

        metric_data = metrics[operation]
        metric_data["count"] += 1
        metric_data["total_time"] += elapsed
        metric_data["min_time"] = min(metric_data["min_time"], elapsed)
        metric_data["max_time"] = max(metric_data["max_time"], elapsed)

        if success:
            metric_data["success_count"] += 1
        else:
            metric_data["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get performance metrics for this service.

        Returns:
            Dictionary with metrics for each measured operation
        """
        result: Dict[str, Any] = {}
        for operation, data in BaseService._class_metrics.get(self.__class__.__name__, {}).items():
            count = data["count"]
            if count == 0:
                continue

            result[operation] = {
                "count": count,
                "avg_time": data["total_time"] / count,
                "min_time": data["min_time"],
                "max_time": data["max_time"],
                "total_time": data["total_time"],
                "success_rate": data["success_count"] / count,
                "success_count": data["success_count"],
                "failure_count": data["failure_count"],
            }

        return result
