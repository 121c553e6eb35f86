"""
Query API — GraphQL client for historical vault events.

One request covers any number of ilks and urns, so the CDP manager can
fetch a proxy's whole history in a single round trip.

Returned events are plain dicts:
  { 'ilk', 'urn', 'tx_hash', 'block', 'timestamp', 'type', 'sender',
    'dink', 'dart', 'ink', 'art', 'rate' }
Amounts are decimal strings in token units; 'rate' is the debt multiplier.
"""
import aiohttp
from loguru import logger

FROB_EVENTS_QUERY = '''
query cdpEvents($ilks: [String!], $urns: [String!]) {
  allFrobEvents(filter: { ilkIdentifier: { in: $ilks }, urnId: { in: $urns } }) {
    nodes {
      ilkIdentifier
      urnId
      tx { transactionHash txFrom blockNumber era { iso } }
      dink
      dart
      ilkRate
      ink
      art
      type
    }
  }
}
'''


class QueryApiError(Exception):
    pass


class QueryApi:

    def __init__(self, url: str, timeout: float = 10.0, session: aiohttp.ClientSession = None):
        self.url = url
        self.timeout = timeout
        self._session = session

    async def _post(self, payload: dict) -> dict:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        if self._session is not None:
            async with self._session.post(self.url, json=payload, timeout=timeout) as resp:
                return await self._read(resp)
        async with aiohttp.ClientSession() as session:
            async with session.post(self.url, json=payload, timeout=timeout) as resp:
                return await self._read(resp)

    async def _read(self, resp) -> dict:
        if resp.status != 200:
            raise QueryApiError(f'Query API returned HTTP {resp.status}')
        body = await resp.json()
        if body.get('errors'):
            raise QueryApiError(f"Query API error: {body['errors'][0].get('message', body['errors'])}")
        return body.get('data') or {}

    async def get_events_for_ilks_and_owners(self, ilks: list[str], owners: list[str]) -> list[dict]:
        """Frob events for every (ilk, urn) combination in one request."""
        if not ilks or not owners:
            return []
        payload = {
            'query': FROB_EVENTS_QUERY,
            'variables': {'ilks': list(ilks), 'urns': [o.lower() for o in owners]},
        }
        data = await self._post(payload)
        nodes = (data.get('allFrobEvents') or {}).get('nodes') or []
        logger.debug(f'[QUERY] {len(nodes)} event(s) for {len(ilks)} ilk(s) / {len(owners)} urn(s)')
        return [_normalize(n) for n in nodes]


def _normalize(node: dict) -> dict:
    tx = node.get('tx') or {}
    return {
        'ilk':       node.get('ilkIdentifier', ''),
        'urn':       node.get('urnId', ''),
        'tx_hash':   tx.get('transactionHash', ''),
        'block':     int(tx.get('blockNumber') or 0),
        'timestamp': (tx.get('era') or {}).get('iso'),
        'sender':    tx.get('txFrom', ''),
        'type':      node.get('type') or 'frob',
        'dink':      node.get('dink') or '0',
        'dart':      node.get('dart') or '0',
        'ink':       node.get('ink') or '0',
        'art':       node.get('art') or '0',
        'rate':      node.get('ilkRate') or '1',
    }
