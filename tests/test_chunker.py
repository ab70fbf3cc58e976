"""
Tests for paragraph-based text chunking.

Covers:
- Empty and short input
- Budget-triggered splits and the overlap window
- Offsets back into the original text
- Determinism
"""

from app.services.chunker import chunk_text, estimate_tokens


class TestChunkTextBasics:
    """Inputs that never need splitting."""

    def test_empty_text_yields_no_chunks(self):
        assert chunk_text("") == []

    def test_whitespace_only_yields_no_chunks(self):
        assert chunk_text("   \n\n \t \n") == []

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("  VPN drops every hour.\n\nRestarting the tunnel helps.  ")

        assert len(chunks) == 1
        assert chunks[0].content == "VPN drops every hour.\n\nRestarting the tunnel helps."
        assert chunks[0].chunk_index == 0

    def test_oversized_single_paragraph_is_emitted_whole(self):
        text = "x" * 5000
        chunks = chunk_text(text)

        assert len(chunks) == 1
        assert chunks[0].content == text
        assert chunks[0].token_count == 1250

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0


class TestChunkTextSplitting:
    """Budget splits and overlap seeding."""

    def test_three_paragraph_example(self):
        """500 / 4000 / 500 characters with a 3200-character budget."""
        a, b, c = "a" * 500, "b" * 4000, "c" * 500
        text = f"{a}\n\n{b}\n\n{c}"

        chunks = chunk_text(text, chunk_size=800, chunk_overlap=200, chars_per_token=4)

        assert [chunk.chunk_index for chunk in chunks] == [0, 1, 2]
        assert chunks[0].content == a
        # No room for an overlap tail next to an oversized paragraph
        assert chunks[1].content == b
        assert chunks[2].content == "b" * 800 + "\n\n" + c
        assert chunks[2].content.startswith(chunks[1].content[-800:])

    def test_three_paragraph_example_offsets(self):
        a, b, c = "a" * 500, "b" * 4000, "c" * 500
        text = f"{a}\n\n{b}\n\n{c}"

        chunks = chunk_text(text)

        assert (chunks[0].start_offset, chunks[0].end_offset) == (0, 500)
        assert (chunks[1].start_offset, chunks[1].end_offset) == (502, 4502)
        assert (chunks[2].start_offset, chunks[2].end_offset) == (3702, len(text))
        assert text[chunks[2].start_offset:chunks[2].start_offset + 800] == "b" * 800

    def test_overlap_shrinks_to_fit_budget(self):
        a, b, c = "a" * 3000, "b" * 3000, "c" * 100
        text = f"{a}\n\n{b}\n\n{c}"

        chunks = chunk_text(text, chunk_size=800, chunk_overlap=200, chars_per_token=4)

        assert [len(chunk.content) for chunk in chunks] == [3000, 3200, 902]
        assert chunks[1].content == "a" * 198 + "\n\n" + b
        assert chunks[1].start_offset == 2802
        assert chunks[2].content == "b" * 800 + "\n\n" + c

    def test_budget_holds_for_large_paragraphs(self):
        sizes = [2900, 3100, 1500, 2400, 3198, 700, 3000, 2500]
        text = "\n\n".join(chr(ord("a") + i) * size for i, size in enumerate(sizes))

        chunks = chunk_text(text)

        assert len(chunks) > len(sizes) // 2
        for chunk in chunks:
            assert len(chunk.content) <= 3200
            assert text[chunk.start_offset:chunk.end_offset] == chunk.content

    def test_small_budget_split(self):
        chunks = chunk_text("aaaa\n\nbbbb\n\ncccc", chunk_size=10, chunk_overlap=2, chars_per_token=1)

        assert [chunk.content for chunk in chunks] == ["aaaa\n\nbbbb", "bb\n\ncccc"]

    def test_paragraph_separators_with_spaces(self):
        chunks = chunk_text("first\n   \nsecond\n\t\nthird", chunk_size=2, chunk_overlap=0, chars_per_token=4)

        assert [chunk.content for chunk in chunks] == ["first", "second", "third"]
        assert [chunk.start_offset for chunk in chunks] == [0, 10, 19]

    def test_consecutive_chunks_overlap(self):
        paragraphs = [f"Paragraph {i}: " + "lorem ipsum dolor " * 20 for i in range(40)]
        text = "\n\n".join(p.strip() for p in paragraphs)

        chunks = chunk_text(text)

        assert len(chunks) > 3
        for previous, current in zip(chunks, chunks[1:]):
            assert current.content.startswith(previous.content[-800:].lstrip())
            assert len(current.content) <= 3200

    def test_chunk_offsets_point_into_text(self):
        paragraphs = [f"Section {i}\n" + "firewall rule review " * 30 for i in range(20)]
        text = "\n\n".join(paragraphs)

        for chunk in chunk_text(text):
            assert text[chunk.start_offset:chunk.end_offset].strip().endswith(chunk.content[-20:])
            assert 0 <= chunk.start_offset < chunk.end_offset <= len(text)

    def test_chunking_is_deterministic(self):
        text = "\n\n".join(f"Log entry {i}: " + "disk usage at 91% " * 15 for i in range(30))

        assert chunk_text(text) == chunk_text(text)
