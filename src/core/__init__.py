# src/core/__init__.py

from src.core.config import *
from src.core.db import (
    init_db,
    close_db,
    connection,
    transaction,
)
from src.core.crypto import encrypt, decrypt
from src.core.errors import MarketplaceError
from src.core.dependencies import (
    sign_value,
    verify_signed_value,
    get_http_client,
    get_acting_user_id,
    get_acting_user,
)
