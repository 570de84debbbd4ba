"""Diff engine: compare a local and a remote manifest into per-file actions."""

from __future__ import annotations

from collections import Counter
from dataclasses import replace
from typing import TYPE_CHECKING

from nimble.exceptions import BlockSizeMismatchError
from nimble.models.actions import ActionKind, FileAction

if TYPE_CHECKING:
    from collections.abc import Iterable

    from nimble.models.manifest import FileRecord, ModManifest

Diff = list[tuple[str, FileAction]]


def changed_offsets(local: FileRecord, remote: FileRecord) -> tuple[int, ...]:
    """Return the remote block offsets that must be fetched to turn local into remote.

    Blocks are paired by offset. With equal sizes only the differing blocks
    are returned. When the size changed, every remote block from the first
    divergent one onward is returned; a remote that is a block-aligned
    prefix of the local file needs no blocks, only truncation. If no block
    differs although sizes and whole-file digests do, every block is returned.
    """
    remote_offsets = tuple(block.offset for block in remote.blocks)

    def _same(index: int) -> bool:
        block = remote.blocks[index]
        other = local.block_at(block.offset)
        return other is not None and other.length == block.length and other.digest == block.digest

    if local.size_bytes != remote.size_bytes:
        for index in range(len(remote.blocks)):
            if not _same(index):
                return remote_offsets[index:]
        return ()

    changed = tuple(
        remote_offsets[index] for index in range(len(remote.blocks)) if not _same(index)
    )
    return changed or remote_offsets


def diff(local: ModManifest, remote: ModManifest) -> Diff:
    """Compute one action per path in the union of both manifests, in lexical path order.

    Pure: never touches the filesystem or the network.
    Raises BlockSizeMismatchError if the manifests use different block sizes.
    """
    if local.block_size != remote.block_size:
        raise BlockSizeMismatchError(local.block_size, remote.block_size)

    actions: Diff = []
    for path in sorted(set(local.files) | set(remote.files)):
        local_record = local.files.get(path)
        remote_record = remote.files.get(path)
        if local_record is None and remote_record is not None:
            actions.append((path, FileAction.add(remote_record)))
        elif remote_record is None and local_record is not None:
            actions.append((path, FileAction.delete(local_record)))
        elif local_record is not None and remote_record is not None:
            if local_record.whole_file_digest == remote_record.whole_file_digest:
                actions.append((path, FileAction.unchanged(remote_record)))
            else:
                actions.append(
                    (
                        path,
                        FileAction.update(
                            remote_record, changed_offsets(local_record, remote_record)
                        ),
                    )
                )
    return actions


def apply_actions(
    local: ModManifest, actions: Iterable[tuple[str, FileAction]], remote: ModManifest
) -> ModManifest:
    """Return the manifest that results from applying ``actions`` to ``local``.

    The result takes the remote manifest's name, block size and checksum.
    """
    files = dict(local.files)
    for path, action in actions:
        if action.kind is ActionKind.DELETE:
            files.pop(path, None)
        else:
            files[path] = action.record
    return replace(remote, files=files)


def summarize(actions: Iterable[tuple[str, FileAction]]) -> Counter[ActionKind]:
    return Counter(action.kind for _, action in actions)
