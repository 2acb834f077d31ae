"""Application modules.

- upload: Resumable chunked upload sessions and chunk storage
- transcoding: ffmpeg probing, ABR renditions, HLS manifests and publishing
- processing: Job queue, progress tracking and the transcoding coordinator
- media: Media item registration and processing status
- cleanup: Garbage collection of expired, failed and orphaned storage
"""
