"""Face gallery building blocks (store/loader/manager/matcher).

The model adapter lives in `facegallery.face.adapter` and is imported on demand so
the gallery code can be used and tested without the InsightFace runtime.
"""
