import requests

from recovery.config import ZERO_ADDRESS
from recovery.errors import DataSourceError
from recovery.reader import ChainReader, scan_blocks


class ExplorerReader(ChainReader):
    """
    Enumerates transfer recipients through an Etherscan-compatible
    explorer API (``module=account&action=tokentx``) instead of raw
    log scans. Balances and positions still come from the node.
    """

    page_size = 10_000

    def __init__(self, web3, explorer, api_key=None, session=None, **kwargs):
        super().__init__(web3, **kwargs)
        self.explorer = explorer
        self.api_key = api_key
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config, **kwargs):
        return super().from_config(config, explorer=config.explorer, api_key=config.explorer_key, **kwargs)

    def _get(self, params):
        response = self.session.get(self.explorer, params=params, timeout=60)
        response.raise_for_status()
        data = response.json()
        if data.get('status') == '1':
            return data['result']
        result = data.get('result')
        if 'no transactions found' in str(data.get('message', '')).lower():
            return []
        raise DataSourceError('explorer error', {'message': data.get('message'), 'result': result})

    def _transfers(self, token, lo, hi):
        transfers = []
        page = 1
        while True:
            params = {
                'module': 'account',
                'action': 'tokentx',
                'contractaddress': token,
                'startblock': lo,
                'endblock': hi,
                'page': page,
                'offset': self.page_size,
                'sort': 'asc',
            }
            if self.api_key:
                params['apikey'] = self.api_key
            result = self._call(lambda: self._get(params))
            transfers.extend(result)
            if len(result) < self.page_size:
                return transfers
            page += 1

    def transfer_recipients(self, token, block):
        fetch = lambda lo, hi: self._transfers(token, lo, hi)
        transfers = scan_blocks(fetch, self.start_block, block, self.batch_size)
        recipients = dict.fromkeys(tx['to'].lower() for tx in transfers if tx.get('to'))
        recipients.pop(ZERO_ADDRESS, None)
        print('Found:', len(recipients), 'addresses')
        return list(recipients)
