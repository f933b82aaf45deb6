"""Reference rewriting and reassembly agent tests."""

from __future__ import annotations

import orjson

from ledger_deploy.chunking.agent import agent_registration_snippet, generate_reassembly_agent
from ledger_deploy.chunking.chunker import create_chunk_manifest, split_into_chunks
from ledger_deploy.rewriting.rewriter import ReferenceRewriter, inject_snippet

ACCESS = {
    "styles.css": "/content/cs_0",
    "logo.png": "/content/lg_0",
    "assets/app.js": "/content/js_0",
}


def test_rewrites_known_references_only() -> None:
    html = (
        b'<link href="styles.css?v=2"><img src="logo.png#frag">'
        b'<script src="https://cdn.example.com/x.js"></script><img src="other.png">'
    )
    out = ReferenceRewriter().rewrite("index.html", html, ACCESS)

    assert out == (
        b'<link href="/content/cs_0?v=2"><img src="/content/lg_0#frag">'
        b'<script src="https://cdn.example.com/x.js"></script><img src="other.png">'
    )


def test_rewrites_nested_relative_paths() -> None:
    css = b".a { background: url('../logo.png'); }\n@import \"../styles.css\";"
    out = ReferenceRewriter().rewrite("assets/theme.css", css, ACCESS)

    assert out == b".a { background: url('/content/lg_0'); }\n@import \"/content/cs_0\";"


def test_unchanged_without_matches() -> None:
    data = b"plain text with logo.png"
    assert ReferenceRewriter().rewrite("notes.txt", data, ACCESS) is data


def test_non_utf8_bytes_survive_rewrite() -> None:
    html = b'<img src="logo.png"><p>\xff\xfe caf\xe9</p>'
    out = ReferenceRewriter().rewrite("index.html", html, ACCESS)

    assert out == b'<img src="/content/lg_0"><p>\xff\xfe caf\xe9</p>'


def test_agent_snippet_injection() -> None:
    snippet = agent_registration_snippet("/content/sw_0")
    out = ReferenceRewriter().rewrite(
        "index.html", b"<html><head><title>x</title></head><body></body></html>", {}, agent_access_path="/content/sw_0"
    )

    assert out.decode().index(snippet) < out.decode().index("</head>")
    assert "navigator.serviceWorker.register('/content/sw_0')" in snippet
    assert inject_snippet("<html lang=en><body>", "S") == "<html lang=en>S<body>"
    assert inject_snippet("<p>bare</p>", "S") == "S<p>bare</p>"


def test_agent_embeds_sorted_manifests() -> None:
    video = create_chunk_manifest(
        "media/intro.mp4",
        "video/mp4",
        6,
        4,
        [(chunk, f"tx{chunk.index}", 0) for chunk in split_into_chunks(b"abcdef", 4)],
    )
    archive = create_chunk_manifest(
        "data/archive.zip",
        "application/zip",
        3,
        4,
        [(chunk, "zz", 0) for chunk in split_into_chunks(b"xyz", 4)],
    )

    source = generate_reassembly_agent([video, archive], "https://ordfs.network/")

    assert source == generate_reassembly_agent([archive, video], "https://ordfs.network")
    assert "__MANIFESTS__" not in source
    assert "__CONTENT_URL__" not in source
    assert "https://ordfs.network" in source
    expected = orjson.dumps(
        [archive.model_dump(mode="json", by_alias=True), video.model_dump(mode="json", by_alias=True)],
        option=orjson.OPT_SORT_KEYS,
    ).decode()
    assert expected in source
    assert '"originalPath":"data/archive.zip"' in source
