from coderelay.message import Message, MessageRole, dump_messages, system, user


def test_role_serialized_as_value():
    msg = Message(role=MessageRole.USER, content="hello")
    assert msg.model_dump() == {"role": "user", "content": "hello"}


def test_helpers():
    assert system("be terse").role is MessageRole.SYSTEM
    assert user("hi").role is MessageRole.USER


def test_dump_messages_mixes_models_and_dicts():
    dumped = dump_messages([
        system("sys"),
        {"role": "user", "content": "raw"},
    ])
    assert dumped == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "raw"},
    ]
