import json
import sys
from datetime import datetime, timezone


def json_log(level: str, event: str, **fields):
    # One JSON object per line on stderr; the process supervisor ships it.
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)
