from .connection import get_db, engine, AsyncSessionLocal, init_db, Base, build_engine, build_session_factory

# Import models to ensure they are registered with Base
from .models import (
    LetterTypeDB, LetterTypeFieldDB, EmployeeDB, FileReferenceDB,
    SignatureDB, DocumentTemplateDB, EmailJobDB,
    DataSource, FieldType, EmailJobStatus, generate_uuid, utc_now
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    'build_engine', 'build_session_factory',
    'LetterTypeDB', 'LetterTypeFieldDB', 'EmployeeDB', 'FileReferenceDB',
    'SignatureDB', 'DocumentTemplateDB', 'EmailJobDB',
    'DataSource', 'FieldType', 'EmailJobStatus', 'generate_uuid', 'utc_now',
]
