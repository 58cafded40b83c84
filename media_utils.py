"""Image and video derivatives: thumbnails and GPS-tagged working copies"""
import logging
from io import BytesIO

from PIL import Image
from PIL.ExifTags import TAGS
from PIL.TiffImagePlugin import IFDRational

from schemas import GPSFix

logger = logging.getLogger(__name__)

GPS_IFD_TAG = 34853
MAKE_TAG = 271
MODEL_TAG = 272
DATETIME_TAG = 306


def _dd_to_dms(value: float):
    """Decimal degrees to an EXIF (degrees, minutes, seconds) rational triple."""
    value = abs(value)
    degrees = int(value)
    minutes_full = (value - degrees) * 60
    minutes = int(minutes_full)
    seconds = round((minutes_full - minutes) * 60, 4)
    return (IFDRational(degrees, 1), IFDRational(minutes, 1), IFDRational(seconds))


def _dms_to_dd(dms, ref) -> float:
    degrees = float(dms[0])
    minutes = float(dms[1])
    seconds = float(dms[2])
    dd = degrees + minutes / 60 + seconds / 3600
    if ref in ("S", "W"):
        dd = -dd
    return dd


def embed_gps_exif(image_bytes: bytes, gps: GPSFix) -> bytes:
    """Return a copy of the image with GPS coordinates in its EXIF block.

    Raises on undecodable input; callers treat that as non-fatal and keep
    the untagged bytes.
    """
    img = Image.open(BytesIO(image_bytes))
    exif = img.getexif()
    gps_ifd = {
        1: "N" if gps.latitude >= 0 else "S",
        2: _dd_to_dms(gps.latitude),
        3: "E" if gps.longitude >= 0 else "W",
        4: _dd_to_dms(gps.longitude),
    }
    if gps.altitude is not None:
        gps_ifd[5] = 0 if gps.altitude >= 0 else 1
        gps_ifd[6] = IFDRational(abs(gps.altitude))
    exif[GPS_IFD_TAG] = gps_ifd

    out = BytesIO()
    if img.format == "JPEG":
        img.save(out, "JPEG", exif=exif, quality="keep")
    else:
        img.save(out, img.format or "PNG", exif=exif)
    return out.getvalue()


def extract_exif(image_bytes: bytes) -> dict:
    """Read GPS coordinates, camera make/model and datetime from EXIF."""
    result = {"lat": None, "lon": None, "make": None, "model": None, "datetime": None, "raw": None}
    try:
        img = Image.open(BytesIO(image_bytes))
        exif_data = img.getexif()
        if not exif_data:
            return result

        raw = {}
        for tag_id, value in exif_data.items():
            tag_name = TAGS.get(tag_id, str(tag_id))
            if isinstance(value, bytes):
                continue
            raw[tag_name] = str(value)
        result["raw"] = raw
        result["make"] = exif_data.get(MAKE_TAG)
        result["model"] = exif_data.get(MODEL_TAG)
        result["datetime"] = exif_data.get(DATETIME_TAG)

        gps_ifd = exif_data.get_ifd(GPS_IFD_TAG)
        if gps_ifd:
            if gps_ifd.get(2) and gps_ifd.get(1):
                result["lat"] = _dms_to_dd(gps_ifd[2], gps_ifd[1])
            if gps_ifd.get(4) and gps_ifd.get(3):
                result["lon"] = _dms_to_dd(gps_ifd[4], gps_ifd[3])
    except Exception as e:
        logger.warning(f"EXIF extraction failed (non-fatal): {e}")
    return result


def create_image_thumbnail(source_path: str, dest_path: str, width: int, quality: int) -> str:
    """Resize to a fixed width, keeping aspect ratio, and save as JPEG."""
    with Image.open(source_path) as img:
        rgb = img.convert("RGB")
        height = max(1, int(width * rgb.height / rgb.width))
        rgb.resize((width, height)).save(dest_path, "JPEG", quality=quality)
    return dest_path


def create_video_thumbnail(
    source_path: str, dest_path: str, width: int, quality: int, at_seconds: float = 1.0
) -> str:
    """Grab a poster frame from a video and save it as a JPEG thumbnail."""
    import cv2

    cap = cv2.VideoCapture(source_path)
    try:
        if not cap.isOpened():
            raise ValueError(f"Cannot open video: {source_path}")
        fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
        cap.set(cv2.CAP_PROP_POS_FRAMES, int(fps * at_seconds))
        ret, frame = cap.read()
        if not ret:
            # Shorter than at_seconds: fall back to the first frame
            cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
            ret, frame = cap.read()
        if not ret:
            raise ValueError(f"No decodable frames in {source_path}")
    finally:
        cap.release()

    rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    pil_img = Image.fromarray(rgb)
    height = max(1, int(width * pil_img.height / pil_img.width))
    pil_img.resize((width, height)).save(dest_path, "JPEG", quality=quality)
    return dest_path

