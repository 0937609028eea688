import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from conftest import TestingSessionLocal, auth_headers
from mercado_felino import chat
from mercado_felino.chat import (
    SEARCH_PRODUCTS_TOOL, UNKNOWN_USER_LABEL, LangChainChatModel, ModelReply,
    PromptTurn, ToolCall, build_prompt,
)
from mercado_felino.errors import ExternalServiceError
from mercado_felino.models import ChatSession, ChatTurn


def send(client, user, text):
    return client.post("/api/ai-chat/message", json={"messageText": text}, headers=auth_headers(user))


def test_first_message_creates_session_with_two_turns(client, db, user, chat_model):
    chat_model.replies.append(ModelReply(text="¡Miau, hola michi!"))
    response = send(client, user, "hola")
    assert response.status_code == 200
    assert response.json() == {"reply": "¡Miau, hola michi!"}

    assert db.query(ChatSession).count() == 1
    turns = db.query(ChatTurn).order_by(ChatTurn.position).all()
    assert [(t.role, t.text) for t in turns] == [("user", "hola"), ("model", "¡Miau, hola michi!")]


def test_persona_turns_are_never_persisted(client, user, chat_model):
    send(client, user, "hola")
    send(client, user, "¿tienes arena?")

    history = client.get("/api/ai-chat/session", headers=auth_headers(user)).json()["history"]
    assert [turn["role"] for turn in history] == ["user", "model", "user", "model"]
    assert history[0]["parts"] == [{"text": "hola"}]
    assert all("Contexto" not in turn["parts"][0]["text"] for turn in history)

    # second call saw persona pair + the two persisted turns
    working = chat_model.histories[1]
    assert len(working) == 4
    assert "michi" in working[0].text
    assert working[2:] == [PromptTurn("user", "hola"), PromptTurn("model", "Miau! ¿En qué te ayudo?")]
    assert chat_model.sent == ["hola", "¿tienes arena?"]


def test_tool_call_round_trip(client, db, user, chat_model, make_product):
    make_product(name="Arena para gato", description="Aglomerante", stock=4, price=9.5)
    chat_model.replies.extend([
        ModelReply(tool_calls=[ToolCall(name="search_products", args={"query": "ARENA"}, id="call_1")]),
        ModelReply(text="Tenemos Arena para gato a 9.5."),
    ])

    response = send(client, user, "¿qué arena tienes?")
    assert response.json()["reply"] == "Tenemos Arena para gato a 9.5."
    assert chat_model.tools[0] == [SEARCH_PRODUCTS_TOOL]

    [(call, result)] = chat_model.tool_results[0]
    assert call.id == "call_1"
    assert [p["name"] for p in json.loads(result)] == ["Arena para gato"]

    turns = db.query(ChatTurn).order_by(ChatTurn.position).all()
    assert [(t.role, t.text) for t in turns] == [
        ("user", "¿qué arena tienes?"),
        ("model", "Tenemos Arena para gato a 9.5."),
    ]


def test_tool_with_no_results(client, user, chat_model):
    chat_model.replies.extend([
        ModelReply(tool_calls=[ToolCall(name="search_products", args={"query": "dinosaurio"})]),
        ModelReply(text="No tenemos eso."),
    ])
    send(client, user, "¿dinosaurios?")
    [(_, result)] = chat_model.tool_results[0]
    assert result == "No se encontraron productos con la consulta: dinosaurio"


def test_endless_tool_calls_fail_without_persisting(client, db, user, chat_model, make_product):
    make_product(name="Arena para gato")
    call = ToolCall(name="search_products", args={"query": "arena"}, id="c1")
    chat_model.replies.extend([ModelReply(tool_calls=[call]) for _ in range(5)])

    response = send(client, user, "hola")
    assert response.status_code == 500
    assert response.json()["detail"] == "AI error: model did not produce a reply"
    assert len(chat_model.tool_results) == 3
    assert db.query(ChatTurn).count() == 0


def test_empty_final_reply_is_not_persisted(client, db, user, chat_model):
    chat_model.replies.append(ModelReply(text="  "))
    response = send(client, user, "hola")
    assert response.status_code == 500
    assert db.query(ChatTurn).count() == 0


def test_model_failure_is_labeled_and_not_persisted(client, db, user, chat_model):
    chat_model.replies.append(ExternalServiceError("quota exceeded"))
    response = send(client, user, "hola")
    assert response.status_code == 500
    assert response.json()["detail"] == "AI error: quota exceeded"
    assert db.query(ChatTurn).count() == 0


def test_missing_api_key(client, user):
    response = send(client, user, "hola")
    assert response.status_code == 500
    assert response.json()["detail"].startswith("AI error:")


def test_empty_message_rejected(client, user, chat_model):
    assert send(client, user, "").status_code == 400
    assert send(client, user, "   ").status_code == 400
    assert chat_model.histories == []


def test_session_view_is_idempotent(client, db, user):
    for _ in range(2):
        response = client.get("/api/ai-chat/session", headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json() == {"history": []}
    assert db.query(ChatSession).count() == 1


def test_concurrent_first_access_reuses_session(db, user, monkeypatch):
    other = TestingSessionLocal()
    other.add(ChatSession(user_id=user["id"]))
    other.commit()
    other.close()
    # lookup misses the session the other request just created
    monkeypatch.setattr(chat, "find_session", lambda db, user_id: None)

    session = chat.get_or_create_session(db, user["id"])
    assert session.user_id == user["id"]
    assert db.query(ChatSession).count() == 1


def test_chat_requires_user_role(client, admin, chat_model):
    response = client.post("/api/ai-chat/message", json={"messageText": "hola"}, headers=auth_headers(admin))
    assert response.status_code == 403


def test_legacy_routes_share_the_session(client, user, chat_model):
    chat_model.replies.append(ModelReply(text="Miau"))
    response = client.post("/api/chat/message", json={"message": "hola"}, headers=auth_headers(user))
    assert response.json() == {"botResponse": "Miau"}
    send(client, user, "adiós")

    history = client.get("/api/chat/history", headers=auth_headers(user)).json()
    assert [(h["sender"], h["message"]) for h in history] == [
        ("user", "hola"), ("bot", "Miau"), ("user", "adiós"), ("bot", "Miau! ¿En qué te ayudo?"),
    ]
    assert history[0]["timestamp"]


def test_legacy_history_without_session(client, user):
    assert client.get("/api/chat/history", headers=auth_headers(user)).json() == []


def test_model_context_is_limited_to_recent_turns(client, user, chat_model):
    for i in range(12):
        send(client, user, f"mensaje {i}")
    # 11 earlier exchanges are stored, only the last 20 turns are sent
    working = chat_model.histories[-1]
    assert len(working) == 2 + 20
    assert working[2] == PromptTurn("user", "mensaje 1")
    assert working[-2] == PromptTurn("user", "mensaje 10")


def test_build_prompt_is_pure():
    history = [PromptTurn("user", "hola"), PromptTurn("model", "miau")]
    working = build_prompt(history, "michi")
    assert history == [PromptTurn("user", "hola"), PromptTurn("model", "miau")]
    assert [t.role for t in working[:2]] == ["user", "model"]
    assert "michi" in working[0].text and "michi" in working[1].text
    assert working[2:] == history
    assert UNKNOWN_USER_LABEL in build_prompt([], None)[0].text


class ScriptedLLM:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.bound_tools = None

    def bind_tools(self, tools):
        self.bound_tools = tools
        return self

    def invoke(self, messages):
        self.calls.append(list(messages))
        return self.responses.pop(0)


def test_langchain_adapter_tool_round_trip():
    llm = ScriptedLLM([
        AIMessage(content="", tool_calls=[{"name": "search_products", "args": {"query": "arena"}, "id": "c1"}]),
        AIMessage(content=[{"type": "text", "text": "Hay arena."}]),
    ])
    conversation = LangChainChatModel(llm).start(build_prompt([], "michi"), [SEARCH_PRODUCTS_TOOL])
    assert llm.bound_tools == [SEARCH_PRODUCTS_TOOL]

    reply = conversation.send("¿arena?")
    assert reply.tool_calls == [ToolCall(name="search_products", args={"query": "arena"}, id="c1")]
    first = llm.calls[0]
    assert isinstance(first[0], HumanMessage) and isinstance(first[1], AIMessage)
    assert first[-1].content == "¿arena?"

    final = conversation.send_tool_results([(reply.tool_calls[0], "[]")])
    assert final.text == "Hay arena."
    tool_message = llm.calls[1][-1]
    assert isinstance(tool_message, ToolMessage)
    assert tool_message.tool_call_id == "c1"


def test_langchain_adapter_wraps_provider_errors():
    class BrokenLLM:
        def bind_tools(self, tools):
            return self

        def invoke(self, messages):
            raise RuntimeError("503 unavailable")

    conversation = LangChainChatModel(BrokenLLM()).start([], [SEARCH_PRODUCTS_TOOL])
    with pytest.raises(ExternalServiceError) as excinfo:
        conversation.send("hola")
    assert excinfo.value.detail == "AI error: 503 unavailable"
