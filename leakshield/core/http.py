import requests
from requests.adapters import HTTPAdapter

from leakshield.core.constants import MAX_WORKERS, USER_AGENT


def create_session(user_agent: str = USER_AGENT, pool_size: int = MAX_WORKERS) -> requests.Session:
    """
    Create a requests session shared by the worker threads of a run.

    The connection pool is sized to the worker count so concurrent threads
    do not discard connections.
    """
    session = requests.Session()
    session.headers["User-Agent"] = user_agent
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session
