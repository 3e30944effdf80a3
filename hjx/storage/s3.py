"""S3-backed storage location.

The document lives at s3://<bucket>/<prefix>/db.json. Useful when the office
machines share a bucket instead of a network drive. S3 is the cross-device
copy; the local cache stays authoritative for fast restore.

Requires boto3: pip install -e ".[aws]"
"""

from hjx.storage.base import StorageHandle

# Error codes that mean "this bucket is not yours to use" rather than "try later"
_REFUSED_CODES = {"403", "404", "AccessDenied", "NoSuchBucket", "Forbidden", "NotFound"}


def _error_code(exc):
    return (getattr(exc, "response", None) or {}).get("Error", {}).get("Code", "")


class S3Handle(StorageHandle):
    """Storage location under an S3 bucket prefix."""

    kind = "s3"

    def __init__(self, bucket, prefix="", granted=None, client=None):
        super().__init__(granted)
        if not bucket:
            raise ValueError("bucket is required for an S3 storage location")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client

    @property
    def _s3(self):
        if self._client is None:
            try:
                import boto3
            except ImportError:
                raise RuntimeError(
                    "boto3 is required for S3 storage. "
                    "Install with: pip install -e '.[aws]'"
                )
            self._client = boto3.client("s3")
        return self._client

    @property
    def label(self):
        return f"s3://{self.bucket}/{self.prefix}" if self.prefix else f"s3://{self.bucket}"

    def _key(self, name):
        return f"{self.prefix}/{name}" if self.prefix else name

    def _probe(self, mode):
        # head_bucket can't tell read from write; put_object failures surface in the gateway
        try:
            self._s3.head_bucket(Bucket=self.bucket)
        except Exception as e:
            if _error_code(e) in _REFUSED_CODES:
                return False
            raise
        return True

    def read_text(self, name):
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=self._key(name))
        except Exception as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"{self.label}/{name}") from e
            raise
        return response["Body"].read().decode("utf-8")

    def write_text(self, name, text):
        self._s3.put_object(
            Bucket=self.bucket,
            Key=self._key(name),
            Body=text.encode("utf-8"),
            ContentType="application/json",
        )
        return f"{self.label}/{name}"

    def to_dict(self):
        return {"kind": self.kind, "bucket": self.bucket, "prefix": self.prefix, "granted": self.granted}
