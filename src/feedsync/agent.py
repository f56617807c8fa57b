"""LangGraph operator agent for feedsync."""

import json
import os
import sqlite3
from typing import Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import SystemMessage, ToolMessage
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, MessagesState, StateGraph

from feedsync.tools import (
    get_feeds_due,
    get_pipeline_status,
    get_sync_history,
    list_feeds,
    set_priority,
    subscribe_to_feed,
    sync_now,
)

SYSTEM_PROMPT = """You are the feedsync operator assistant. feedsync keeps a set of RSS and Atom feeds synchronized on a priority schedule and hands new articles to the embedding and clustering pipeline.

You help operators:
- Subscribe to new feeds by URL
- See which feeds exist, their priority, and when they last and next sync
- See which feeds are due for sync right now
- Change a feed's priority: high syncs hourly, medium daily, low weekly
- Trigger an immediate sync for specific feeds
- Diagnose failing feeds from their sync history
- Check the state of the embedding and clustering pipeline

When an operator asks what is due, use get_feeds_due.
When an operator wants to change how often a feed syncs, use set_priority with the feed id and one of high, medium, low.
When an operator wants feeds synced now, use sync_now. Set wait to true only if they want the results right away.
When an operator asks why a feed is failing, use get_sync_history and report the HTTP status, error and byte size of recent attempts.
If you only know a feed by name or URL, call list_feeds first to find its id.
When the operator's intent is unclear, ask a clarifying question rather than guessing.
Be concise but informative in your responses."""

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

# All tools available to the agent
TOOLS = [
    subscribe_to_feed,
    list_feeds,
    get_feeds_due,
    set_priority,
    sync_now,
    get_sync_history,
    get_pipeline_status,
]


def _build_graph(model, tools: list) -> StateGraph:
    """Agent/tool loop: the model answers or calls tools until it answers."""
    model_with_tools = model.bind_tools(tools) if tools else model
    tools_by_name = {t.name: t for t in tools}

    def agent_node(state: MessagesState):
        messages = [SystemMessage(content=SYSTEM_PROMPT)] + state["messages"]
        return {"messages": [model_with_tools.invoke(messages)]}

    def tool_node(state: MessagesState):
        """Run the requested tools; failures go back to the model as text."""
        results = []
        for tool_call in state["messages"][-1].tool_calls:
            try:
                content = str(tools_by_name[tool_call["name"]].invoke(tool_call["args"]))
            except Exception as e:
                content = json.dumps({"status": "error", "message": str(e)})
            results.append(ToolMessage(content=content, tool_call_id=tool_call["id"]))
        return {"messages": results}

    def route(state: MessagesState) -> Literal["tool_node", "__end__"]:
        return "tool_node" if state["messages"][-1].tool_calls else END

    builder = StateGraph(MessagesState)
    builder.add_node("agent_node", agent_node)
    builder.add_node("tool_node", tool_node)
    builder.add_edge(START, "agent_node")
    builder.add_conditional_edges("agent_node", route, ["tool_node", END])
    builder.add_edge("tool_node", "agent_node")
    return builder


def create_agent(
    checkpoint_db_path: str = "feedsync_checkpoints.db",
    tools: list | None = None,
    model_name: str | None = None,
):
    """Create and compile the operator agent.

    Args:
        checkpoint_db_path: Path to SQLite database for LangGraph checkpointing.
        tools: Tools to bind. If None, uses default TOOLS.
        model_name: Anthropic model id; defaults to FEEDSYNC_AGENT_MODEL or DEFAULT_MODEL.

    Returns:
        Compiled LangGraph agent.
    """
    model = ChatAnthropic(
        model=model_name or os.environ.get("FEEDSYNC_AGENT_MODEL", DEFAULT_MODEL),
        temperature=0,
    )
    builder = _build_graph(model, TOOLS if tools is None else tools)
    checkpointer = SqliteSaver(sqlite3.connect(checkpoint_db_path, check_same_thread=False))
    return builder.compile(checkpointer=checkpointer)
