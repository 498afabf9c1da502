"""Catalog CSV seeding"""
import pytest
from datetime import datetime
from pathlib import Path

from db import seed_catalog
from models import Video
from stores import MemoryCatalog

SAMPLE_CSV = Path(__file__).resolve().parent.parent / "data" / "videos_sample.csv"


@pytest.mark.asyncio
async def test_seed_from_sample_csv():
    catalog = MemoryCatalog()
    await seed_catalog(catalog, str(SAMPLE_CSV))

    assert await catalog.count_videos() == 12
    video = await catalog.get_video("video_005")
    assert video.category == "SciFi"
    assert video.views == 51320
    assert video.upload_date == datetime(2024, 6, 18)
    assert "Documentary" in await catalog.list_categories()


@pytest.mark.asyncio
async def test_seed_skips_when_catalog_populated():
    catalog = MemoryCatalog([Video(video_id="x", category="Drama")])
    await seed_catalog(catalog, str(SAMPLE_CSV))

    assert await catalog.count_videos() == 1


@pytest.mark.asyncio
async def test_seed_counts_bad_rows(tmp_path):
    csv_file = tmp_path / "videos.csv"
    csv_file.write_text(
        "video_id,title,category,duration,upload_date,views\n"
        "ok1,Fine,Drama,100,2024-01-01,10\n"
        "bad1,Broken,Drama,not-a-number,2024-01-01,10\n"
        "ok2,Also Fine,Comedy,200,,5\n"
    )
    catalog = MemoryCatalog()
    await seed_catalog(catalog, str(csv_file))

    assert sorted(catalog.videos) == ["ok1", "ok2"]
    assert catalog.videos["ok2"].upload_date is None


@pytest.mark.asyncio
async def test_seed_missing_file_is_skipped(tmp_path):
    catalog = MemoryCatalog()
    await seed_catalog(catalog, str(tmp_path / "absent.csv"))
    assert await catalog.count_videos() == 0
