from portfolio_uploader.admission import admit_files, is_jpeg_source
from portfolio_uploader.models import MEGABYTE, QuotaUsage, RejectionReason, SourceFile, UploadLimits


def _jpeg(name: str, size: int = 16, content_type="image/jpeg") -> SourceFile:
    return SourceFile(name=name, data=b"\0" * size, content_type=content_type)


def test_is_jpeg_source_accepts_mime_or_extension():
    assert is_jpeg_source(_jpeg("a.jpg"))
    assert is_jpeg_source(_jpeg("a", content_type="image/pjpeg"))
    assert is_jpeg_source(_jpeg("a.bin", content_type="IMAGE/JPEG; charset=binary"))
    assert is_jpeg_source(_jpeg("A.JPEG", content_type=None))
    assert not is_jpeg_source(_jpeg("photo.png", content_type="image/png"))
    assert not is_jpeg_source(_jpeg("notes", content_type=None))


def test_remaining_quota_caps_admission():
    files = [_jpeg(f"img{i}.jpg") for i in range(10)]

    result = admit_files(
        files,
        limits=UploadLimits(),
        usage=QuotaUsage(current_photo_count=195, photo_limit=200),
    )

    assert [f.filename for f in result.admitted] == [f"img{i}.jpg" for i in range(5)]
    assert len(result.rejected) == 5
    assert {r.reason for r in result.rejected} == {RejectionReason.LIMIT}
    assert result.rejected[0].message == "写真の上限（200枚）に達しています"


def test_batch_cap_applies_before_quota():
    files = [_jpeg(f"img{i}.jpg") for i in range(5)]

    result = admit_files(
        files,
        limits=UploadLimits(max_files_per_batch=4),
        usage=QuotaUsage(current_photo_count=0, photo_limit=200),
        already_queued=2,
    )

    assert len(result.admitted) == 2
    assert [r.filename for r in result.rejected] == ["img2.jpg", "img3.jpg", "img4.jpg"]
    assert result.rejected[0].message == "一度に追加できるのは4枚までです"


def test_type_and_size_rejections_do_not_consume_slots():
    files = [
        _jpeg("photo.png", content_type="image/png"),
        _jpeg("huge.jpg", size=51 * MEGABYTE),
        _jpeg("ok.jpg"),
    ]

    result = admit_files(
        files,
        limits=UploadLimits(),
        usage=QuotaUsage(current_photo_count=199, photo_limit=200),
    )

    assert [f.filename for f in result.admitted] == ["ok.jpg"]
    reasons = {r.filename: r.reason for r in result.rejected}
    assert reasons == {"photo.png": RejectionReason.TYPE, "huge.jpg": RejectionReason.SIZE}


def test_size_limit_is_inclusive():
    limits = UploadLimits(max_file_size_bytes=100)

    result = admit_files(
        [_jpeg("exact.jpg", size=100), _jpeg("over.jpg", size=101)],
        limits=limits,
        usage=QuotaUsage(),
    )

    assert [f.filename for f in result.admitted] == ["exact.jpg"]
    assert result.rejected[0].reason is RejectionReason.SIZE


def test_admission_keeps_input_order():
    names = ["c.jpg", "a.jpg", "b.jpg"]

    result = admit_files([_jpeg(n) for n in names], limits=UploadLimits(), usage=QuotaUsage())

    assert [f.filename for f in result.admitted] == names
    assert len({f.id for f in result.admitted}) == 3


def test_reserved_quota_reduces_slots():
    result = admit_files(
        [_jpeg("a.jpg"), _jpeg("b.jpg")],
        limits=UploadLimits(),
        usage=QuotaUsage(current_photo_count=190, photo_limit=200),
        already_queued=3,
        quota_reserved=9,
    )

    assert [f.filename for f in result.admitted] == ["a.jpg"]
    assert result.rejected[0].reason is RejectionReason.LIMIT
