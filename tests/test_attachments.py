"""Tests for staging WHMCS attachments before upload to Discord."""

import base64
import os
import time

import pytest

from bridge.errors import TransientError, WhmcsApiError
from bridge.services.attachments import AttachmentPipeline, TicketContext

CONTEXT = TicketContext(ticket_id="T-100", internal_id=100, reply_id="5")


def read(path):
    with open(path, "rb") as handle:
        return handle.read()


class TestFileChecks:
    def test_allowed_extensions_are_case_insensitive(self, attachments):
        assert attachments.is_allowed_file("photo.PNG")
        assert attachments.is_allowed_file("report.pdf")
        assert not attachments.is_allowed_file("setup.exe")
        assert not attachments.is_allowed_file("README")

    def test_size_limit(self, whmcs, tmp_path):
        pipeline = AttachmentPipeline(whmcs, temp_dir=str(tmp_path), max_file_size=10)
        assert pipeline.is_file_size_allowed(10)
        assert not pipeline.is_file_size_allowed(11)


class TestStaging:
    async def test_reply_scope_is_tried_first(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 0)] = b"from reply"
        whmcs.attachments[("ticket", "100", 0)] = b"from ticket"

        async with attachments.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
            assert [f.filename for f in staged.files] == ["a.txt"]
            assert read(staged.files[0].path) == b"from reply"

        assert whmcs.attachment_calls == [("reply", "5", 0)]

    async def test_falls_back_to_ticket_scope(self, attachments, whmcs):
        whmcs.attachments[("ticket", "100", 1)] = b"from ticket"

        async with attachments.stage([{"filename": "a.txt", "index": 1}], CONTEXT) as staged:
            assert read(staged.files[0].path) == b"from ticket"
            assert staged.unavailable == []

        assert [call[0] for call in whmcs.attachment_calls] == ["reply", "ticket"]

    async def test_id_descriptor(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 3)] = b"by id"

        async with attachments.stage([{"id": 3, "filename": "b.pdf"}], CONTEXT) as staged:
            assert read(staged.files[0].path) == b"by id"

    async def test_inline_base64_descriptor(self, attachments, whmcs):
        payload = {"name": "note.txt", "data": base64.b64encode(b"inline").decode()}

        async with attachments.stage([payload], CONTEXT) as staged:
            assert read(staged.files[0].path) == b"inline"

        assert whmcs.attachment_calls == []

    async def test_transient_failure_is_retried(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 0)] = [TransientError("timeout"), b"second try"]

        async with attachments.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
            assert read(staged.files[0].path) == b"second try"

        assert whmcs.attachment_calls == [("reply", "5", 0), ("reply", "5", 0)]

    async def test_exhausted_retries_fall_through_to_next_scope(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 0)] = TransientError("timeout")

        async with attachments.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
            assert staged.files == []
            assert staged.unavailable == ["a.txt"]

        assert whmcs.attachment_calls == [("reply", "5", 0), ("reply", "5", 0), ("ticket", "100", 0)]

    async def test_api_error_is_not_retried(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 0)] = WhmcsApiError("File Not Found")
        whmcs.attachments[("ticket", "100", 0)] = WhmcsApiError("File Not Found")

        async with attachments.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
            assert staged.unavailable == ["a.txt"]

        assert len(whmcs.attachment_calls) == 2

    async def test_without_internal_id_only_reply_scope_is_used(self, attachments, whmcs):
        context = TicketContext(ticket_id="T-100", internal_id=None, reply_id="5")

        async with attachments.stage([{"filename": "a.txt", "index": 0}], context) as staged:
            assert staged.unavailable == ["a.txt"]

        assert whmcs.attachment_calls == [("reply", "5", 0)]

    async def test_disallowed_extension_is_not_downloaded(self, attachments, whmcs):
        async with attachments.stage([{"filename": "virus.exe", "index": 0}], CONTEXT) as staged:
            assert staged.unavailable == ["virus.exe"]

        assert whmcs.attachment_calls == []

    async def test_declared_oversize_is_not_downloaded(self, whmcs, tmp_path):
        pipeline = AttachmentPipeline(whmcs, temp_dir=str(tmp_path), max_file_size=4, backoff=0)

        async with pipeline.stage([{"filename": "a.txt", "index": 0, "size": 5}], CONTEXT) as staged:
            assert staged.unavailable == ["a.txt"]

        assert whmcs.attachment_calls == []

    async def test_actual_oversize_is_rejected(self, whmcs, tmp_path):
        pipeline = AttachmentPipeline(whmcs, temp_dir=str(tmp_path), max_file_size=4, backoff=0)
        whmcs.attachments[("reply", "5", 0)] = b"too long"

        async with pipeline.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
            assert staged.files == []
            assert staged.unavailable == ["a.txt"]

    async def test_malformed_descriptor(self, attachments):
        async with attachments.stage([{"unexpected": True}, "garbage"], CONTEXT) as staged:
            assert staged.files == []
            assert staged.unavailable == ["attachment", "attachment"]

    @pytest.mark.parametrize("descriptor", [
        {"filename": "a.png", "index": "x"},
        {"id": "first", "filename": "a.png"},
        {"filename": "a.png", "index": 0, "size": "12 KB"},
        {"name": "a.png", "data": "not-base64!"},
    ])
    async def test_descriptor_with_bad_values(self, attachments, whmcs, descriptor):
        whmcs.attachments[("reply", "5", 0)] = b"data"

        async with attachments.stage([descriptor], CONTEXT) as staged:
            assert staged.files == []
            assert staged.unavailable == ["a.png"]

    async def test_bad_descriptor_does_not_block_next_one(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 1)] = b"ok"
        descriptors = [{"filename": "bad.png", "index": "x"}, {"filename": "good.png", "index": 1}]

        async with attachments.stage(descriptors, CONTEXT) as staged:
            assert [f.filename for f in staged.files] == ["good.png"]
            assert staged.unavailable == ["bad.png"]

    async def test_one_failure_does_not_block_others(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 1)] = b"ok"
        descriptors = [{"filename": "bad.exe", "index": 0}, {"filename": "good.png", "index": 1}]

        async with attachments.stage(descriptors, CONTEXT) as staged:
            assert [f.filename for f in staged.files] == ["good.png"]
            assert staged.unavailable == ["bad.exe"]


class TestTempFiles:
    async def test_files_removed_after_block(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 0)] = b"data"

        async with attachments.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
            path = staged.files[0].path
            assert os.path.exists(path)
            assert os.path.basename(path) != "a.txt"

        assert not os.path.exists(path)

    async def test_files_removed_when_block_raises(self, attachments, whmcs):
        whmcs.attachments[("reply", "5", 0)] = b"data"
        paths = []

        with pytest.raises(TransientError):
            async with attachments.stage([{"filename": "a.txt", "index": 0}], CONTEXT) as staged:
                paths.extend(f.path for f in staged.files)
                raise TransientError("send failed")

        assert paths and not any(os.path.exists(p) for p in paths)

    async def test_cleanup_stale_removes_only_old_files(self, whmcs, tmp_path):
        pipeline = AttachmentPipeline(whmcs, temp_dir=str(tmp_path), max_age=60)
        old_file = tmp_path / "old.bin"
        fresh_file = tmp_path / "fresh.bin"
        old_file.write_bytes(b"x")
        fresh_file.write_bytes(b"x")
        old = time.time() - 3600
        os.utime(old_file, (old, old))

        assert await pipeline.cleanup_stale() == 1
        assert not old_file.exists()
        assert fresh_file.exists()

    async def test_cleanup_stale_without_directory(self, whmcs, tmp_path):
        pipeline = AttachmentPipeline(whmcs, temp_dir=str(tmp_path / "missing"))
        assert await pipeline.cleanup_stale() == 0
