from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Text, DateTime, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class BackupRun(Base):
    """Backup run history and logs"""
    __tablename__ = 'backup_runs'

    id = Column(Integer, primary_key=True)
    run_id = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), nullable=False)  # running, success, noop, partial, failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    targets_total = Column(Integer, default=0, nullable=False)
    targets_failed = Column(Integer, default=0, nullable=False)
    archive_path = Column(String(500))
    file_size_bytes = Column(BigInteger)
    pruned_count = Column(Integer)
    error_message = Column(Text)
    logs = Column(Text)  # Detailed execution logs

    def __repr__(self):
        return f'<BackupRun {self.run_id} status={self.status}>'


def init_history_db(database_url: str):
    """
    Create the history tables if needed.

    Returns:
        Session factory bound to the database
    """
    engine = create_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
