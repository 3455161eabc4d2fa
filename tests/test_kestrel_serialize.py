import json

import pytest
import yaml

from kestrel.kestrel_datatypes import Hash, String, Integer
from kestrel.kestrel_runtime import ScriptRunner
from kestrel.kestrel_serialize import (
    deserialize, serialize, detect_format, marshal_json, unmarshal_json,
)


async def run(src: str, **kwargs):
    runner = ScriptRunner(**kwargs)
    return await runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str):
    assert res.status == 'error', f"expected error, got {res.status}: {res.value!r}"
    assert contains in res.error_message, res.error_message


# --- Plain-data helpers ---

def test_detect_format_prefers_content_type():
    assert detect_format("application/json") == 'json'
    assert detect_format("application/x-yaml") == 'yaml'
    assert detect_format(None, '  [1, 2]') == 'json'
    assert detect_format("text/plain", "hello") is None


def test_deserialize_honours_charset_and_falls_back_to_text():
    body = '{"name": "café"}'.encode('latin-1')
    assert deserialize(body, content_type="application/json; charset=latin-1") == {"name": "café"}
    assert deserialize(b"just words") == "just words"


def test_deserialize_rejects_malformed_documents():
    with pytest.raises(ValueError, match="invalid JSON"):
        deserialize("{nope", fmt='json')
    with pytest.raises(ValueError, match="invalid YAML"):
        deserialize("a: [1, 2", fmt='yaml')


def test_serialize_formats():
    assert json.loads(serialize({"a": [1, 2]}, fmt='json')) == {"a": [1, 2]}
    assert yaml.safe_load(serialize({"a": 1}, fmt='yaml')) == {"a": 1}
    with pytest.raises(ValueError, match="Unsupported serialization format"):
        serialize({}, fmt='toml')


def test_marshal_keeps_hash_order_and_stringifies_keys():
    h = Hash.from_pairs([(String("z"), Integer(1)), (Integer(3), String("x"))])
    assert marshal_json(h) == '{"z": 1, "3": "x"}'
    back = unmarshal_json('{"z": 1, "a": 2}')
    assert [k.value for k in back.keys()] == ["z", "a"]


# --- Builtins ---

@pytest.mark.asyncio
async def test_json_builtins_keep_key_order():
    assert_ok(await run('json_encode({"b": 1, "a": 2})'), '{"b": 1, "a": 2}')
    assert_ok(await run("json_decode('{\"z\": 1, \"a\": 2}').keys()"), ["z", "a"])


@pytest.mark.asyncio
async def test_json_decode_error_is_a_runtime_error():
    res = await run("json_decode('{bad')")
    assert_error(res, "invalid JSON")


@pytest.mark.asyncio
async def test_yaml_builtins():
    assert_ok(await run('yaml_encode({"name": "kes", "n": 2})'), "name: kes\nn: 2\n")
    assert_ok(await run("yaml_decode('{a: 1, b: [x, y]}')"), {"a": 1, "b": ["x", "y"]})


@pytest.mark.asyncio
async def test_render_mustache_template():
    res = await run("render('Hi {{name}}, {{#items}}[{{.}}]{{/items}}', {\"name\": \"K\", \"items\": [1, 2]})")
    assert_ok(res, "Hi K, [1][2]")


@pytest.mark.asyncio
async def test_read_and_write_files(tmp_path):
    src = """
    write_file("notes.txt", "hello")
    write_file("data/out.json", {"a": [1, 2]})
    [read_file("notes.txt"), read_file("data/out.json")]
    """
    res = await run(src, source_dir=str(tmp_path))
    assert_ok(res, ["hello", {"a": [1, 2]}])
    assert json.loads((tmp_path / "data" / "out.json").read_text()) == {"a": [1, 2]}


@pytest.mark.asyncio
async def test_read_missing_file(tmp_path):
    res = await run('read_file("absent.txt")', source_dir=str(tmp_path))
    assert_error(res, "read_file:")
