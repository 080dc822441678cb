import asyncio
import logging

from kv_cron import EnqueueOptions, KvCron
from kv_cron.storages.sqlalchemy import SqlAlchemyKvStore

logging.basicConfig(level=logging.INFO)


def report():
    print("Generating the daily report...")


async def heartbeat():
    print("Still alive.")


async def main():
    kv = SqlAlchemyKvStore("sqlite+aiosqlite:///kv_cron.db", poll_interval=0.5)
    await kv.create_tables()

    kv_cron = KvCron(kv, {"report": report, "heartbeat": heartbeat}, kv_key_prefix=["example"])

    # Every 10 seconds, five times in total.
    await kv_cron.enqueue("heartbeat", EnqueueOptions(schedule={"second": {"start": "*", "step": 10}}, amount=5))

    stop_report = asyncio.Event()
    result = await kv_cron.enqueue("report", EnqueueOptions(
        schedule={"minute": 0, "hour": 9},
        backoff_schedule=[100, 500, 1000],
        cancellation_signal=stop_report,
    ))
    print(f"Daily report scheduled for {result.scheduled_for.isoformat()}")

    listener = asyncio.create_task(kv_cron.listen())
    await asyncio.sleep(60)

    stop_report.set()
    await asyncio.sleep(0.1)
    print(await kv_cron.stats())

    await kv_cron.close()
    await kv.close()
    await listener


if __name__ == "__main__":
    asyncio.run(main())
