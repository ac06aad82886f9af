import json
import logging
from typing import List, Optional
import redis
from examhub.core.config import REDIS_URL, SEQUENCE_TTL_SECONDS

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(REDIS_URL, decode_responses=True)

# best-effort: a Redis failure is logged and never fails the attempt operation

def sequence_key(attempt_id: int) -> str:
    return f"attempt:{attempt_id}:sequence"

def remember_sequence(attempt_id: int, question_ids: List[int], ttl: int = SEQUENCE_TTL_SECONDS) -> None:
    try:
        redis_client.set(sequence_key(attempt_id), json.dumps(question_ids), ex=ttl)
    except redis.RedisError as e:
        logger.warning("could not cache sequence for attempt %s: %s", attempt_id, e)

def recall_sequence(attempt_id: int) -> Optional[List[int]]:
    try:
        raw = redis_client.get(sequence_key(attempt_id))
    except redis.RedisError as e:
        logger.warning("could not read cached sequence for attempt %s: %s", attempt_id, e)
        return None
    return [int(q) for q in json.loads(raw)] if raw else None

def forget_sequence(attempt_id: int) -> None:
    try:
        redis_client.delete(sequence_key(attempt_id))
    except redis.RedisError as e:
        logger.warning("could not drop cached sequence for attempt %s: %s", attempt_id, e)
