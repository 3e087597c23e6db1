"""
preview.py — Optional on-screen preview.

Bounding box is drawn blue while the object is still approaching and
green once it has reached the dropzone. Any OpenCV/display error turns
the preview off for the rest of the run; it never stops sorting.
"""

import cv2

from sorter.errors import AcquisitionError
from sorter.geometry import has_arrived, trigger_x
from sorter.vision import COLOUR_ORDER, extract_contours

APPROACH_BGR = (255, 0, 0)
ARRIVED_BGR = (0, 255, 0)
TRIGGER_BGR = (0, 0, 255)
STOP_KEY = 32   # SPACE


class PreviewWindow:

    def __init__(self, config: dict):
        self.enabled = config.get("preview_enable", True)
        self.window = config.get("preview_window", "sorter")
        self.wait_ms = config.get("preview_wait_ms", 20)
        self._opened = False

    def show(self, image, box=None, arrived: bool = False, line_x=None) -> bool:
        """Draw and display. Returns True if the operator pressed SPACE."""
        if not self.enabled:
            return False
        try:
            if not self._opened:
                cv2.namedWindow(self.window, cv2.WINDOW_AUTOSIZE)
                self._opened = True

            if line_x is not None:
                h = image.shape[0]
                tx = int(line_x)
                cv2.line(image, (tx, 0), (tx, h - 1), TRIGGER_BGR, 1)

            if box is not None:
                colour = ARRIVED_BGR if arrived else APPROACH_BGR
                cv2.rectangle(image, (box.x, box.y),
                              (box.x + box.width, box.y + box.height),
                              colour, 1, cv2.LINE_8)

            cv2.imshow(self.window, image)
            key = cv2.waitKey(self.wait_ms) & 0xFF
        except cv2.error as e:
            print(f"[PREVIEW] ✗ Preview disabled: {e}")
            self.enabled = False
            return False

        return key == STOP_KEY

    def close(self):
        if self._opened:
            try:
                cv2.destroyWindow(self.window)
            except cv2.error:
                pass
            self._opened = False


async def live_view(camera, config: dict, detector=None, window: str = "Sorter Test"):
    """
    Ground check: pull frames straight from the camera and show them until
    Q is pressed. With a detector, every qualifying contour is boxed and the
    selected candidate is drawn thicker; the colour masks are shown alongside.
    """
    tx = trigger_x(config["image_w"], config["dropzone_fraction"])
    print(f"[PREVIEW] Live view '{window}' — press Q to quit")
    try:
        while True:
            try:
                frame = await camera.get_frame(config["frame_timeout_s"])
            except AcquisitionError as e:
                print(f"[PREVIEW] ✗ {e}")
                break
            try:
                raw = frame.image.copy()
            finally:
                camera.release_frame(frame)

            image = raw.copy()
            if detector is not None:
                masks = detector.masks(raw)
                for colour in COLOUR_ORDER:
                    for contour in extract_contours(masks[colour]):
                        if cv2.contourArea(contour) < detector.min_area[colour]:
                            continue
                        x, y, w, h = cv2.boundingRect(contour)
                        cv2.rectangle(image, (x, y), (x + w, y + h), (255, 255, 255), 1)
                cand = detector.detect(raw)
                if cand is not None:
                    b = cand.box
                    arrived = has_arrived(b, image.shape[1], config["dropzone_fraction"])
                    cv2.rectangle(image, (b.x, b.y), (b.x + b.width, b.y + b.height),
                                  ARRIVED_BGR if arrived else APPROACH_BGR, 2)
                    cv2.putText(image, f"{cand.colour.value} x={b.x} w={b.width} a={cand.area:.0f}",
                                (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 2)
                cv2.line(image, (int(tx), 0), (int(tx), image.shape[0] - 1), TRIGGER_BGR, 1)
                combined = cv2.bitwise_or(*[masks[c] for c in COLOUR_ORDER])
                cv2.imshow(f"{window} — masks", combined)

            cv2.imshow(window, image)
            if cv2.waitKey(1) & 0xFF == ord('q'):
                break
    except cv2.error as e:
        print(f"[PREVIEW] ✗ Live view failed: {e}")
    finally:
        cv2.destroyAllWindows()
