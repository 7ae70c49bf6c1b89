# conftest.py
import sys
from pathlib import Path

# Flat layout: app.py, app_validators.py, analysis_normalizer.py and
# gemini_provider.py live at the repository root; put it on sys.path for pytest
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
