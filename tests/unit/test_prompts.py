from agentwire.message import ChatMode
from agentwire.prompts import (
    get_system_prompt,
    has_tool_result,
    last_user_content,
    prepare_messages,
)


def test_preamble_prepended_when_no_system_message():
    messages = [{"role": "user", "content": "hi"}]
    prepared = prepare_messages(ChatMode.AGENT, messages)

    assert prepared[0] == {"role": "system", "content": get_system_prompt("agent")}
    assert prepared[1:] == messages


def test_preamble_merged_into_existing_system_messages():
    messages = [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hi"},
    ]
    prepared = prepare_messages("chat", messages)

    assert len(prepared) == 2
    assert prepared[0]["content"] == f"{get_system_prompt('chat')}\n\nBe brief."
    assert messages[0]["content"] == "Be brief."


def test_each_mode_has_its_own_preamble():
    prompts = {get_system_prompt(m) for m in ChatMode}
    assert len(prompts) == len(ChatMode)


def test_last_user_content():
    messages = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
        {"role": "tool", "content": "out", "tool_call_id": "c1"},
    ]
    assert last_user_content(messages) == "second"
    assert last_user_content([]) == ""
    assert last_user_content(None) == ""


def test_has_tool_result():
    assert has_tool_result([{"role": "tool", "content": "x"}])
    assert not has_tool_result([{"role": "user", "content": "x"}])
