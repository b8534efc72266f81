from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class CreateInstanceRequest(BaseModel):
    name: str
    host: str
    port: int
    username: str
    password: str  # Stored as the instance secret, never returned


class UpdateInstanceRequest(BaseModel):
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None


class InstanceRequest(BaseModel):
    """Base for request bodies addressed to one instance."""
    model_config = ConfigDict(populate_by_name=True)

    container_id: int = Field(alias="containerId")


class HashesRequest(InstanceRequest):
    hashes: Union[str, List[str]]  # "abc|def" or ["abc", "def"]


class TorrentActionRequest(HashesRequest):
    delete_files: bool = Field(False, alias="deleteFiles")


class SetCategoryRequest(HashesRequest):
    category: str = ""


class SetTagsRequest(HashesRequest):
    tags: str  # Comma separated


class FilePriorityRequest(InstanceRequest):
    hash: str
    id: Union[int, List[int]]
    priority: int


class CategoryRequest(InstanceRequest):
    category: str
    save_path: str = Field("", alias="savePath")


class DeleteCategoryRequest(InstanceRequest):
    categories: Union[str, List[str]]  # Newline separated or a list
