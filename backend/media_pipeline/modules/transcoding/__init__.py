"""Video transcoding: probing, thumbnails, ABR renditions, HLS manifests and
publishing of the results to durable storage."""
