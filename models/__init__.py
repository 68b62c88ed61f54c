"""
Persistence package.

`storage` is the process-wide DBStorage facade; the application factory binds
it to a database with storage.reload(url).
"""
from models.db_storage import DBStorage

storage = DBStorage()
