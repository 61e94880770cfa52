from typing import Any, Callable, Dict, Optional
import json
import time
import requests
import structlog


logger = structlog.get_logger()

class ReplicationRequest(object):
    """ A class to handle replication service API requests with throttling back-off and structured logging."""
    def __init__(self, token: Optional[str] = None, timeout: int = 10,
                 max_throttle_retries: int = 5, sleep: Callable[[float], None] = time.sleep) -> None:
        self.session: requests.Session = requests.Session()
        self.timeout = timeout
        self.max_throttle_retries = max_throttle_retries
        self.sleep = sleep

        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "shardshift/recovery-orchestrator",
        })
        if token:
            self.session.headers["Authorization"] = f'Bearer {token}'

    def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """ Make a GET request to the specified URL, backing off while throttled."""
        logger.debug("replication_request.get", url=url)
        return self.request_with_retry(lambda: self.session.get(
            url=url,
            params=params,
            timeout=self.timeout)
        )

    def post(self, url: str, data: Dict[str, Any]) -> requests.Response:
        """ Make a POST request to the specified URL, backing off while throttled."""
        logger.debug("replication_request.post", url=url)
        json_data = json.dumps(data)
        return self.request_with_retry(lambda: self.session.post(
            url=url,
            data=json_data,
            timeout=self.timeout)
        )

    def request_with_retry(self, request: Callable[[], requests.Response]) -> requests.Response:
        """ Repeat the request while the service answers 429, honouring Retry-After."""
        number_of_retries: int = 0

        response = request()

        while response.status_code == 429 and number_of_retries < self.max_throttle_retries:
            number_of_retries += 1
            retry_after = float(response.headers.get("Retry-After", 2 ** number_of_retries))
            logger.warning("replication_request.throttled",
                           retry_after=retry_after,
                           attempt=number_of_retries)
            self.sleep(retry_after)
            response = request()

        return response
