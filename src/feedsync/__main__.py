"""Entry point for feedsync: python -m feedsync"""

import asyncio
import logging
import os
import uuid

from langchain_core.messages import HumanMessage

from feedsync.agent import create_agent
from feedsync.config import SyncConfig
from feedsync.database import Database
from feedsync.pipeline import PipelineManager
from feedsync.poller import start_polling
from feedsync.tools import set_services

DEFAULT_DB_PATH = "feedsync.db"
CHECKPOINT_DB_PATH = "feedsync_checkpoints.db"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("langchain").setLevel(logging.WARNING)


async def chat_loop(agent, config: dict) -> None:
    """Run the interactive operator console."""
    print("feedsync operator ready! Type your message (Ctrl+C to quit).\n")

    while True:
        try:
            user_input = await asyncio.to_thread(input, "You: ")
        except EOFError:
            break

        if not user_input.strip():
            continue

        try:
            response = await asyncio.to_thread(
                agent.invoke,
                {"messages": [HumanMessage(content=user_input)]},
                config,
            )

            last_message = response["messages"][-1]
            print(f"\nAgent: {last_message.content}\n")
        except Exception as e:
            error_msg = str(e)
            if "tool_use" in error_msg and "tool_result" in error_msg:
                # Corrupted checkpoint, start a fresh thread
                config["configurable"]["thread_id"] = uuid.uuid4().hex
                print("\nAgent: Sorry, I had an issue with my memory. Let me start fresh. Please try again.\n")
            else:
                print(f"\nAgent: Sorry, I encountered an error: {error_msg}\n")


async def main() -> None:
    """Initialize storage, start the sync loop and run the operator console."""
    db_path = os.environ.get("FEEDSYNC_DB_PATH", DEFAULT_DB_PATH)
    checkpoint_path = os.environ.get("FEEDSYNC_CHECKPOINT_PATH", CHECKPOINT_DB_PATH)
    sync_config = SyncConfig.from_env()

    db = Database(db_path)
    db.connect()
    pipeline = PipelineManager(db)
    set_services(db, pipeline, sync_config, loop=asyncio.get_running_loop())

    agent = create_agent(checkpoint_db_path=checkpoint_path)

    # Each session gets a fresh thread to avoid corrupted checkpoint issues
    config = {"configurable": {"thread_id": uuid.uuid4().hex}}

    poller_task = asyncio.create_task(start_polling(db, pipeline, sync_config))

    try:
        await chat_loop(agent, config)
    except KeyboardInterrupt:
        print("\nGoodbye!")
    finally:
        poller_task.cancel()
        try:
            await poller_task
        except asyncio.CancelledError:
            pass
        db.close()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
