#!/usr/bin/env python3
import asyncio
import argparse
import logging
import random

from medalert.client import RealtimeClient, ReconnectExhausted, ReconnectPolicy


def initial_units(count):
    # Spread around downtown San Francisco, where the sample units are seeded.
    units = []
    for i in range(count):
        units.append({
            'id': i + 1,
            'latitude': 37.7749 + random.uniform(-0.02, 0.02),
            'longitude': -122.4194 + random.uniform(-0.02, 0.02),
        })
    return units


async def run(count, interval, ws_url, attempts):
    units = initial_units(count)

    async def drive(client):
        while True:
            for u in units:
                # random small move
                u['latitude'] += random.uniform(-0.0005, 0.0005)
                u['longitude'] += random.uniform(-0.0005, 0.0005)
                msg = {'type': 'location_update', 'role': 'ambulance', **u}
                if await client.send(msg):
                    print('sent', msg)
            await asyncio.sleep(interval)

    async def show(message):
        if message.get('type') == 'emergency_broadcast':
            print('emergency', message['data'])

    client = RealtimeClient(ws_url, ReconnectPolicy(max_attempts=attempts))
    driver = None

    async def on_open(c):
        nonlocal driver
        print('Simulator connected to', ws_url)
        if driver is None or driver.done():
            driver = asyncio.create_task(drive(c))

    try:
        await client.run(on_message=show, on_open=on_open)
    except ReconnectExhausted as e:
        print('Simulator stopped:', e)
    finally:
        if driver is not None:
            driver.cancel()


if __name__ == '__main__':
    p = argparse.ArgumentParser()
    p.add_argument('--count', type=int, default=3)
    p.add_argument('--interval', type=float, default=3.0)
    p.add_argument('--ws', default='ws://localhost:8000/ws')
    p.add_argument('--attempts', type=int, default=5)
    args = p.parse_args()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run(args.count, args.interval, args.ws, args.attempts))
