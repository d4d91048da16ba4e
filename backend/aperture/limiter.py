"""Rate limiter for ingest and webhook endpoints, keyed by client address."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Per-endpoint limits. Uploads come in bursts from the gallery uploader; imports
# and folder listings each fan out to Dropbox.
UPLOAD_LIMIT = "600/minute"
IMPORT_LIMIT = "60/minute"
LIST_FOLDER_LIMIT = "60/minute"
WEBHOOK_LIMIT = "120/minute"

limiter = Limiter(key_func=get_remote_address)
