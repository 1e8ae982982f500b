import pytest

from linkpoll.node import (
    BLOCK4K,
    MALLOC_MAX,
    LinkBufferNode,
    free,
    get_link_buffer_cap,
    malloc,
    set_link_buffer_cap,
)


@pytest.fixture
def small_cap():
    old = get_link_buffer_cap()
    set_link_buffer_cap(8)
    yield 8
    set_link_buffer_cap(old)


def _filled(text: bytes) -> LinkBufferNode:
    node = LinkBufferNode(len(text))
    node.malloc(len(text))[:] = text
    node.length = node.malloc_off
    return node


def test_link_buffer_cap_roundtrip(small_cap):
    assert get_link_buffer_cap() == small_cap


def test_link_buffer_cap_rejects_non_positive():
    with pytest.raises(ValueError):
        set_link_buffer_cap(0)


def test_malloc_rounds_up_to_power_of_two():
    assert len(malloc(0, 15)) == 16


def test_malloc_large_is_exact():
    assert len(malloc(0, MALLOC_MAX + 1)) == MALLOC_MAX + 1


def test_malloc_rejects_size_above_capacity():
    with pytest.raises(ValueError):
        malloc(10, 5)


def test_free_then_malloc_reuses_storage():
    buf = malloc(0, 64)
    storage = buf.obj
    free(buf)
    again = malloc(0, 33)
    assert again.obj is storage


def test_node_capacity_uses_minimum_cap(small_cap):
    assert LinkBufferNode(5).capacity() == small_cap
    assert LinkBufferNode(15).capacity() == 16


def test_zero_sized_node_is_readonly():
    node = LinkBufferNode(0)
    assert node.readonly
    assert node.capacity() == 0
    assert len(node) == 0
    assert node.is_empty()


def test_malloc_is_not_readable_until_committed():
    node = LinkBufferNode(BLOCK4K)
    view = node.malloc(7)
    assert len(view) == 7
    assert node.malloc_off == 7
    assert len(node) == 0
    node.length = node.malloc_off
    assert len(node) == 7


def test_next_and_peek():
    node = _filled(b"hello world")
    assert bytes(node.peek(5)) == b"hello"
    assert node.off == 0
    assert bytes(node.next(6)) == b"hello "
    assert node.off == 6
    assert len(node) == 5
    assert bytes(node.next(5)) == b"world"
    assert node.is_empty()


def test_next_beyond_capacity_raises():
    node = LinkBufferNode(BLOCK4K)
    with pytest.raises(IndexError):
        node.next(node.capacity() + 1)


def test_refer_shares_storage_and_counts():
    node = _filled(b"hello world")
    ref = node.refer(5)
    assert ref.readonly
    assert ref.origin is node
    assert node.refer_count == 2
    assert node.off == 5
    assert bytes(ref.peek(5)) == b"hello"
    node.buf[0] = ord("j")
    assert bytes(ref.peek(5)) == b"jello"


def test_refer_of_refer_points_at_root():
    node = _filled(b"hello world")
    ref = node.refer(5)
    ref2 = ref.refer(2)
    assert ref2.origin is node
    assert node.refer_count == 3
    assert bytes(ref2.peek(2)) == b"he"
    ref2.release()
    assert node.refer_count == 2
    ref.release()
    assert node.refer_count == 1
    assert ref.origin is None
    assert ref.capacity() == 0


def test_release_recycles_storage():
    node = LinkBufferNode(BLOCK4K)
    storage = node.buf.obj
    node.release()
    assert node.capacity() == 0
    assert node.refer_count == 1
    assert malloc(0, BLOCK4K).obj is storage


def test_release_with_references_keeps_storage():
    node = _filled(b"abcdef")
    ref = node.refer(3)
    node.release()
    assert node.refer_count == 1
    assert bytes(ref.peek(3)) == b"abc"


def test_reset_only_when_unshared():
    node = _filled(b"abcdef")
    node.next(2)
    ref = node.refer(2)
    node.reset()
    assert node.off == 4
    ref.reset()
    assert ref.length == 2
    ref.release()
    node.reset()
    assert node.off == 0
    assert node.length == 0
    assert node.malloc_off == 0