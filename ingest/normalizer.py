import json
import math
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from strategy.errors import FeedError


@dataclass(frozen=True)
class PriceTick:
    timestamp: int
    price: float


RawEvent = Union[str, bytes, Mapping[str, Any]]


def normalize_tick(raw: RawEvent, received_at_ms: Optional[int] = None) -> PriceTick:
    """Turn a Binance trade event (raw JSON or decoded) into a PriceTick.

    Timestamp preference is trade time ``T``, then event time ``E``, then an
    already-normalized ``timestamp``, then the local receive time.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as exc:
            raise FeedError('invalid_json', raw) from exc
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise FeedError('not_an_object', raw)

    price_raw = data.get('p', data.get('price'))
    if price_raw is None:
        raise FeedError('missing_price', raw)
    try:
        price = float(price_raw)
    except (TypeError, ValueError) as exc:
        raise FeedError('bad_price', raw) from exc
    if not math.isfinite(price) or price <= 0:
        raise FeedError('non_positive_price', raw)

    ts_raw = data.get('T') or data.get('E') or data.get('timestamp')
    if ts_raw is None:
        ts = received_at_ms if received_at_ms is not None else int(time.time() * 1000)
    else:
        try:
            ts = int(float(ts_raw))
        except (TypeError, ValueError, OverflowError) as exc:
            raise FeedError('bad_timestamp', raw) from exc
        if ts < 0:
            raise FeedError('bad_timestamp', raw)

    return PriceTick(timestamp=ts, price=price)
