import math
import numbers

import pandas as pd

PARTS_BUCKETS = ("1", "2-3", "4-10", "11+")


def normalize_text(value):
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s if s else None


def get_parts_bucket(parts_count):
    if parts_count is None or isinstance(parts_count, bool):
        return None
    if not isinstance(parts_count, numbers.Real) or pd.isna(parts_count):
        return None
    if math.isinf(parts_count) or parts_count <= 0:
        return None
    count = int(parts_count)
    if count < 1: return None
    if count == 1: return '1'
    elif count <= 3: return '2-3'
    elif count <= 10: return '4-10'
    else: return '11+'
