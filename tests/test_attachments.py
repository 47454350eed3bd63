import pytest

from surveysync.remote.client import AttachmentRef
from surveysync.sync.attachments import (
    AttachmentError,
    AttachmentMaterializer,
    AttachmentTask,
    photo_path,
    sanitize_filename,
)


@pytest.fixture
def materializer(client, store, photos_dir):
    return AttachmentMaterializer(client, store, photos_dir=photos_dir, workers=2)


def test_sanitize_filename():
    assert sanitize_filename("foto 1.jpg") == "foto 1.jpg"
    assert sanitize_filename("../../etc/passwd") == "_.._etc_passwd"
    assert sanitize_filename("a:b?.jpg") == "a_b_.jpg"
    assert sanitize_filename("...") == "attachment"


def test_materialize_writes_file_and_row(fake, materializer, store, photos_dir):
    fake.add_attachment(1, 11, 7, "foto.jpg", b"jpeg-bytes")

    photo = materializer.materialize("CA-001", "G-1", 1, 11, AttachmentRef(7, "foto.jpg", "image/jpeg"))

    target = photo_path(photos_dir, "CA-001", "G-1", "foto.jpg")
    assert photo.local_path == str(target)
    assert target.read_bytes() == b"jpeg-bytes"
    assert not target.with_name("foto.jpg.part").exists()
    assert photo.size_bytes == len(b"jpeg-bytes")
    assert store.find_photo("CA-001", "G-1", 1, "foto.jpg") == photo


def test_existing_photo_is_not_downloaded_again(fake, materializer):
    fake.add_attachment(1, 11, 7, "foto.jpg")
    ref = AttachmentRef(7, "foto.jpg")

    first = materializer.materialize("CA-001", "G-1", 1, 11, ref)
    second = materializer.materialize("CA-001", "G-1", 1, 11, ref)

    assert first.id == second.id
    assert len(fake.downloads()) == 1


def test_force_downloads_again(fake, materializer):
    fake.add_attachment(1, 11, 7, "foto.jpg")
    ref = AttachmentRef(7, "foto.jpg")

    materializer.materialize("CA-001", "G-1", 1, 11, ref)
    materializer.materialize("CA-001", "G-1", 1, 11, ref, force=True)

    assert len(fake.downloads()) == 2


def test_missing_file_is_downloaded_again(fake, materializer):
    fake.add_attachment(1, 11, 7, "foto.jpg")
    ref = AttachmentRef(7, "foto.jpg")

    photo = materializer.materialize("CA-001", "G-1", 1, 11, ref)
    photo_file = photo_path(materializer.photos_dir, "CA-001", "G-1", "foto.jpg")
    photo_file.unlink()
    materializer.materialize("CA-001", "G-1", 1, 11, ref)

    assert photo_file.exists()
    assert len(fake.downloads()) == 2
    assert photo.local_path == str(photo_file)


def test_failed_download_raises_and_records_nothing(fake, materializer, store):
    fake.add_attachment(1, 11, 7, "foto.jpg")
    fake.failing_downloads.add((1, 11, 7))

    with pytest.raises(AttachmentError) as exc:
        materializer.materialize("CA-001", "G-1", 1, 11, AttachmentRef(7, "foto.jpg"))

    assert exc.value.attachment_id == 7
    assert exc.value.layer == 1
    assert store.find_photo("CA-001", "G-1", 1, "foto.jpg") is None


def test_materialize_many_continues_past_failures(fake, materializer):
    for aid in (1, 2, 3):
        fake.add_attachment(2, 21, aid, f"hecho{aid}.jpg")
    fake.failing_downloads.add((2, 21, 2))
    tasks = [
        AttachmentTask("CA-001", "G-1", 2, 21, AttachmentRef(aid, f"hecho{aid}.jpg"))
        for aid in (1, 2, 3)
    ]
    seen = []

    outcomes = materializer.materialize_many(tasks, on_result=seen.append)

    assert len(outcomes) == len(seen) == 3
    failed = [o for o in outcomes if not o.ok]
    assert [o.task.ref.id for o in failed] == [2]
    assert sorted(o.photo.filename for o in outcomes if o.ok) == ["hecho1.jpg", "hecho3.jpg"]
    assert all(o.fetched for o in outcomes if o.ok)
