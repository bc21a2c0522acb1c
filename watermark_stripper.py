# AAO Offline - a tool for playing Ace Attorney Online cases offline.
# Copyright (C) 2025 DragonsWho <dragonswho@gmail.com>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program; if not, see <https://www.gnu.org/licenses/>.


# watermark_stripper.py
import dataclasses
import io
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from PIL import Image, ImageSequence, UnidentifiedImageError

from case_models import AssetRecord
from url_utils import host_matches

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverlayBand:
    """Pixels covered by a host's watermark, measured from each edge."""
    top: int = 0
    bottom: int = 0
    left: int = 0
    right: int = 0

    def crop_box(self, size: Tuple[int, int]) -> Optional[Tuple[int, int, int, int]]:
        width, height = size
        box = (self.left, self.top, width - self.right, height - self.bottom)
        # Leave at least as much image as the band removes
        if box[2] - box[0] < self.left + self.right or box[3] - box[1] < self.top + self.bottom:
            return None
        return box


# Photobucket stamps a banner across the bottom of hotlinked images
WATERMARK_HOSTS: Dict[str, OverlayBand] = {
    "photobucket.com": OverlayBand(bottom=32),
}


class WatermarkStripper:
    def __init__(self, hosts: Optional[Dict[str, OverlayBand]] = None):
        self.hosts = WATERMARK_HOSTS if hosts is None else hosts

    def band_for(self, url: str) -> Optional[OverlayBand]:
        host = urlparse(url).hostname
        for domain, band in self.hosts.items():
            if host_matches(host, [domain]):
                return band
        return None

    def applies(self, record: AssetRecord) -> bool:
        return record.ok and self.band_for(record.url) is not None

    def strip(self, record: AssetRecord) -> AssetRecord:
        """
        Returns a record without the host's overlay, or the record unchanged
        when the host is not a watermarking one or the image cannot be processed.
        """
        band = self.band_for(record.url) if record.ok else None
        if band is None:
            return record
        try:
            content, content_type = self._crop(record.content, band)
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e_img:
            logger.warning("Could not remove watermark from %s, keeping original: %s", record.url, e_img)
            return record
        if content is None:
            logger.warning("Image %s is too small for watermark removal, keeping original", record.url)
            return record
        logger.info("Removed watermark from %s", record.url)
        return dataclasses.replace(record, content=content, content_type=content_type or record.content_type,
                                   watermark_removed=True)

    def __call__(self, record: AssetRecord) -> AssetRecord:
        return self.strip(record)

    @staticmethod
    def _crop(content: bytes, band: OverlayBand) -> Tuple[Optional[bytes], Optional[str]]:
        with Image.open(io.BytesIO(content)) as image:
            image_format = image.format
            if not image_format:
                raise ValueError("unknown image format")
            box = band.crop_box(image.size)
            if box is None:
                return None, None
            frames = [frame.copy().crop(box) for frame in ImageSequence.Iterator(image)]
            save_args = {}
            if len(frames) > 1:
                save_args.update(save_all=True, append_images=frames[1:])
                for key in ("duration", "loop", "disposal"):
                    if key in image.info:
                        save_args[key] = image.info[key]
            output = io.BytesIO()
            first = frames[0]
            if image_format == "JPEG" and first.mode not in ("RGB", "L", "CMYK"):
                first = first.convert("RGB")
            first.save(output, format=image_format, **save_args)
            return output.getvalue(), Image.MIME.get(image_format)
