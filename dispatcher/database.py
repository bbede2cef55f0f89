from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .exception import StorageError
from .models import Base
from .utils import logger


class Database:
    '''
    Owns the engine and hands out transactional sessions.
    '''

    def __init__(self, url: str, create_tables: bool = True):
        connect_args = {}
        if url.startswith('sqlite'):
            # worker threads share one engine
            connect_args = {'check_same_thread': False, 'timeout': 30}
        self.url = url
        self.engine = create_engine(url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            class_=Session,
            expire_on_commit=False,
        )
        if create_tables:
            Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        '''
        Commit on success, roll back on any error. Database errors are
        re-raised as `StorageError` so callers can retry them.
        '''
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger().error(f'database error: {e}')
            raise StorageError(str(e)) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()
