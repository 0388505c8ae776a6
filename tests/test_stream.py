import pytest

from treepilot.errors import GeneratorFailure, MalformedResponse
from treepilot.mutations import CreateFile, RenameFolder
from treepilot.stream import SEPARATOR, StreamIngestor, parse_response


async def _fragments(*parts):
    for part in parts:
        yield part


def test_prose_only_response():
    parsed = parse_response("  Just an explanation.  \n")
    assert parsed.prose == "Just an explanation."
    assert parsed.operations == []


def test_prose_and_operations():
    text = (
        "I added a file.\n"
        f"{SEPARATOR}\n"
        '{"operations": [{"operation": "CREATE_FILE", "path": "src/a.ts", "content": "x"},'
        ' {"operation": "RENAME_FOLDER", "path": "src", "newPath": "lib"}]}'
    )
    parsed = parse_response(text)
    assert parsed.prose == "I added a file."
    assert parsed.operations == [
        CreateFile(path="src/a.ts", content="x"),
        RenameFolder(path="src", new_path="lib"),
    ]


def test_fenced_json_is_accepted():
    text = f"Done.\n{SEPARATOR}\n```json\n{{\"operations\": [{{\"operation\": \"DELETE_FILE\", \"path\": \"a\"}}]}}\n```"
    parsed = parse_response(text)
    assert len(parsed.operations) == 1


def test_empty_remainder_means_no_operations():
    assert parse_response(f"Nothing to do.\n{SEPARATOR}\n   ").operations == []


def test_non_object_remainder_is_ignored():
    parsed = parse_response(f"Hmm.\n{SEPARATOR}\nno json here")
    assert parsed.prose == "Hmm."
    assert parsed.operations == []


def test_missing_operations_key_means_none():
    assert parse_response(f"ok\n{SEPARATOR}\n{{}}").operations == []


def test_malformed_json_raises():
    with pytest.raises(MalformedResponse) as exc:
        parse_response(f"ok\n{SEPARATOR}\n{{\"operations\": [}}")
    assert "Failed to parse file operations" in str(exc.value)


def test_unknown_operation_raises():
    with pytest.raises(MalformedResponse):
        parse_response(f'ok\n{SEPARATOR}\n{{"operations": [{{"operation": "EXPLODE", "path": "a"}}]}}')


def test_operations_must_be_a_list():
    with pytest.raises(MalformedResponse):
        parse_response(f'ok\n{SEPARATOR}\n{{"operations": "CREATE_FILE"}}')


def test_feed_returns_prose_view():
    ingestor = StreamIngestor()
    assert ingestor.feed("Hello ") == "Hello "
    assert ingestor.feed("world\n---JSON") == "Hello world\n---JSON"
    assert ingestor.feed("_OPERATIONS---\n{") == "Hello world\n"
    assert ingestor.text.endswith("{")


@pytest.mark.asyncio
async def test_consume_reports_prose_per_fragment():
    seen = []
    ingestor = StreamIngestor()
    parsed = await ingestor.consume(
        _fragments("Adding ", "a file.\n", SEPARATOR, '\n{"operations": [{"operation": "CREATE_FILE", "path": "x", "content": ""}]}'),
        seen.append,
    )
    assert seen[:2] == ["Adding ", "Adding a file.\n"]
    assert seen[-1] == "Adding a file.\n"
    assert parsed.prose == "Adding a file."
    assert parsed.operations == [CreateFile(path="x")]


@pytest.mark.asyncio
async def test_consume_wraps_stream_errors():
    async def broken():
        yield "partial"
        raise ConnectionError("socket closed")

    with pytest.raises(GeneratorFailure) as exc:
        await StreamIngestor().consume(broken())
    assert "socket closed" in str(exc.value)
