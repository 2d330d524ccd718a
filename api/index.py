from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import create_app
from ledger.config import get_settings
from ledger.logging_setup import setup_logging

settings = get_settings()
setup_logging(settings.log_level, settings.log_file)

app = create_app(settings=settings, root_path="/api")

handler = Mangum(app)
