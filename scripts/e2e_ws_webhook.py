"""Post one alert to a running server and print the events it broadcasts.

Start the app first (``uvicorn signal_router.main:app``). Use a ticker that is
mapped in INSTRUMENT_MAP and accounts pointed at a sandbox.
"""
import argparse
import json
from datetime import datetime, timezone

import requests
from websocket import WebSocketTimeoutException, create_connection

BASE_URL = 'http://127.0.0.1:8000'
WS_URL = 'ws://127.0.0.1:8000/rebase/ws'


def run_once(ticker, signal, price, secret=None, messages=5):
    payload = {
        'ticker': ticker,
        'price': price,
        'signal': signal,
        'strategy': 'e2e-smoke',
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }
    if secret:
        payload['webhook_secret'] = secret

    print('Connecting to websocket:', WS_URL)
    ws = create_connection(WS_URL, timeout=15)
    try:
        print('Posting alert to', BASE_URL + '/webhook/tradingview')
        r = requests.post(BASE_URL + '/webhook/tradingview', json=payload, timeout=30)
        print('POST status:', r.status_code)
        print(json.dumps(r.json(), indent=2))

        for _ in range(messages):
            try:
                msg = json.loads(ws.recv())
            except WebSocketTimeoutException:
                print('No more events')
                break
            print('WS event:', msg.get('type'), json.dumps(msg.get('result') or msg.get('outcomes')))
    finally:
        ws.close()

    status = requests.get(BASE_URL + '/rebase/status', timeout=10).json()
    print('Rebase queue:', status)


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('ticker')
    parser.add_argument('--signal', default='BUY')
    parser.add_argument('--price', type=float, required=True)
    parser.add_argument('--secret')
    args = parser.parse_args()
    run_once(args.ticker.upper(), args.signal.upper(), args.price, args.secret)
