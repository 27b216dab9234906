import pytest

from chatquery.errors import InputInvalid
from chatquery.ingest import parse_chat_csv, parse_query_csv


CHAT_CSV = (
    "Message Type,Message Content,Session ID,Message Date,Participant Identifier,Region\n"
    'user,"Hello, is anyone there?",s1,2024-01-01,P1,EMEA\n'
    "\n"
    "agent,Yes,s1,2024-01-01,A7,\n"
    "broken\n"
    "user,Hi,s2,2024-01-02,P2\n"
)


def test_parse_chat_csv_fields_and_extra_columns():
    messages = parse_chat_csv(CHAT_CSV)
    assert len(messages) == 3
    first = messages[0]
    assert first.message_type == "user"
    assert first.message_content == "Hello, is anyone there?"
    assert first.session_id == "s1"
    assert first.participant_identifier == "P1"
    assert first.extra_fields == {"region": "EMEA"}
    assert messages[1].extra_fields == {"region": ""}
    # short row reaches every required column but not the extra one
    assert messages[2].extra_fields == {}


def test_parse_chat_csv_missing_headers():
    with pytest.raises(InputInvalid) as info:
        parse_chat_csv("message type,session id\nuser,s1\n")
    assert "message content" in info.value.message
    assert "participant identifier" in info.value.message


def test_parse_chat_csv_strips_bom_and_embedded_quotes():
    text = "\ufeffmessage type,message content,session id,message date,participant identifier\n" \
        'user,"She said ""hi""",s1,d1,P1\n'
    messages = parse_chat_csv(text)
    assert messages[0].message_content == "She said hi"


def test_parse_empty_csv():
    with pytest.raises(InputInvalid):
        parse_chat_csv("")


def test_parse_query_csv():
    text = (
        "Query Name,Query Description,Output Format\n"
        'Topic,"What is the topic, briefly?",\n'
        "Participant,extract column 'participant identifier',\n"
        "Lonely\n"
    )
    queries = parse_query_csv(text)
    assert [q.query_name for q in queries] == ["Topic", "Participant"]
    assert queries[0].query_description == "What is the topic, briefly?"
    assert queries[0].output_format == ""


def test_parse_query_csv_missing_headers():
    with pytest.raises(InputInvalid) as info:
        parse_query_csv("query name,query description\nq,d\n")
    assert "output format" in info.value.message
