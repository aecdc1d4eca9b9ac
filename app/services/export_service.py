"""Export selected images as a ZIP of JPEG renditions plus a CSV index."""
import csv
import io
import logging
import zipfile
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Tuple

from werkzeug.utils import secure_filename

import scramble

RENDITIONS = (
    ('original', 'original_url', 'Original Image'),
    ('grid15', 'grid15_url', '15x15 Image'),
    ('grid10', 'grid10_url', '10x10 Image'),
    ('grid5', 'grid5_url', '5x5 Image'),
)
CSV_FIELDS = ['Category', 'Name'] + [title for _, _, title in RENDITIONS]


class ExportService:
    """Builds export archives.

    Layout::

        images.csv
        original/001_<name>_<id>.jpg
        grid15/001_<name>_<id>.jpg
        grid10/...
        grid5/...

    Every rendition is fetched through *fetch* and re-encoded as JPEG.  Any
    fetch or conversion failure aborts the whole export.
    """

    def __init__(self, fetch: Callable[[str], bytes],
                 quality: int = scramble.DEFAULT_QUALITY, max_workers: int = 4) -> None:
        self._fetch = fetch
        self.quality = quality
        self.max_workers = max_workers
        self._log = logging.getLogger('gridreveal.service.export')

    @staticmethod
    def file_stem(index: int, image: Dict) -> str:
        """``NNN_<name>_<id>`` with a 1-based, zero-padded sequence number."""
        name = secure_filename(image.get('name', '')) or 'image'
        return f"{index + 1:03d}_{name}_{image.get('id', '')}"

    def build_csv(self, images: List[Dict]) -> str:
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=CSV_FIELDS, lineterminator='\n')
        writer.writeheader()
        for index, image in enumerate(images):
            stem = self.file_stem(index, image)
            row = {'Category': image.get('category', ''), 'Name': image.get('name', '')}
            for folder, _, title in RENDITIONS:
                row[title] = f'{folder}/{stem}.jpg'
            writer.writerow(row)
        return output.getvalue()

    def _convert(self, job: Tuple[str, str]) -> Tuple[str, bytes]:
        arcname, url = job
        return arcname, scramble.convert(self._fetch(url), 'JPEG', self.quality)

    def export_zip(self, images: List[Dict]) -> bytes:
        """Return the bytes of a DEFLATE-compressed ZIP for *images*."""
        jobs = []
        for index, image in enumerate(images):
            stem = self.file_stem(index, image)
            for folder, key, _ in RENDITIONS:
                jobs.append((f'{folder}/{stem}.jpg', image[key]))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            files = list(pool.map(self._convert, jobs))

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, 'w', compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
            zf.writestr('images.csv', self.build_csv(images))
            for arcname, data in files:
                zf.writestr(arcname, data)
        self._log.info("Exported %d images (%d files)", len(images), len(files) + 1)
        return buf.getvalue()
