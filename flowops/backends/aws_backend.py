"""
flowops/backends/aws_backend.py - AWS IAM access keys and S3 archives using boto3.

Authentication: boto3 credential chain (SSO, instance role, env vars, ~/.aws/credentials).
When no credentials resolve, `current_user()` returns None and the cloud key
rotation is skipped rather than failed.
"""
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from flowops.backends import AccessKeyManager

log = logging.getLogger(__name__)


def make_session(region: str | None = None, profile: str | None = None) -> boto3.Session:
    session_kwargs: dict[str, Any] = {}
    if region:
        session_kwargs["region_name"] = region
    if profile:
        session_kwargs["profile_name"] = profile
    return boto3.Session(**session_kwargs)


class IAMKeyManager(AccessKeyManager):
    """IAM access key lifecycle for the identity running the rotation."""

    def __init__(self, session: boto3.Session | None = None) -> None:
        self._session = session or make_session()
        self._iam: Any = None
        self._sts: Any = None

    @property
    def iam(self) -> Any:
        if self._iam is None:
            self._iam = self._session.client("iam")
        return self._iam

    @property
    def sts(self) -> Any:
        if self._sts is None:
            self._sts = self._session.client("sts")
        return self._sts

    def current_user(self) -> str | None:
        try:
            arn = self.sts.get_caller_identity()["Arn"]
        except (BotoCoreError, ClientError) as e:
            log.warning(f"Cannot resolve AWS identity: {e}")
            return None
        # arn:aws:iam::<account>:user[/path]/<name>; roles have no access keys
        if ":user/" not in arn:
            log.warning(f"AWS identity {arn} is not an IAM user")
            return None
        return arn.rsplit("/", 1)[-1] or None

    def create_access_key(self, user: str) -> dict[str, Any]:
        try:
            key = self.iam.create_access_key(UserName=user)["AccessKey"]
        except ClientError as e:
            raise RuntimeError(f"Failed to create access key for {user}: {e}") from e
        return {"AccessKeyId": key["AccessKeyId"], "SecretAccessKey": key["SecretAccessKey"]}

    def list_access_key_ids(self, user: str) -> list[str]:
        paginator = self.iam.get_paginator("list_access_keys")
        ids = []
        for page in paginator.paginate(UserName=user):
            ids.extend(meta["AccessKeyId"] for meta in page["AccessKeyMetadata"])
        return ids

    def delete_access_key(self, user: str, access_key_id: str) -> None:
        try:
            self.iam.delete_access_key(UserName=user, AccessKeyId=access_key_id)
        except ClientError as e:
            raise RuntimeError(f"Failed to delete access key {access_key_id}: {e}") from e


class S3ArchiveStore:
    """Remote copies of platform backup archives under s3://<bucket>/flow-backups/<env>/."""

    PREFIX = "flow-backups"

    def __init__(self, bucket: str, environment: str, session: boto3.Session | None = None) -> None:
        self.bucket = bucket
        self.environment = environment
        self._s3 = (session or make_session()).client("s3")

    @property
    def prefix(self) -> str:
        return f"{self.PREFIX}/{self.environment}/"

    def key_for(self, archive_name: str) -> str:
        return f"{self.prefix}{archive_name}"

    def upload(self, path: str, archive_name: str, backup_date: str) -> str:
        key = self.key_for(archive_name)
        try:
            self._s3.upload_file(
                path,
                self.bucket,
                key,
                ExtraArgs={
                    "StorageClass": "STANDARD_IA",
                    "Metadata": {"environment": self.environment, "backup-date": backup_date},
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise RuntimeError(f"S3 upload to s3://{self.bucket}/{key} failed: {e}") from e
        return f"s3://{self.bucket}/{key}"

    def download(self, url: str, destination: str) -> None:
        bucket, _, key = url.removeprefix("s3://").partition("/")
        if not bucket or not key:
            raise ValueError(f"Not an s3://bucket/key URL: {url}")
        try:
            self._s3.download_file(bucket, key, destination)
        except (BotoCoreError, ClientError) as e:
            raise RuntimeError(f"S3 download of {url} failed: {e}") from e

    def list_archives(self) -> list[dict[str, Any]]:
        paginator = self._s3.get_paginator("list_objects_v2")
        objects = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
            objects.extend(page.get("Contents", []))
        return sorted(objects, key=lambda o: o["LastModified"], reverse=True)

    def delete(self, key: str) -> None:
        self._s3.delete_object(Bucket=self.bucket, Key=key)
