from security_labeling.db.base import Base

# Import all models here
from security_labeling.models.topic_source import StoredTopicSource
from security_labeling.models.labeling_state import LabelingMetadata, LabelingStat

__all__ = ["Base", "StoredTopicSource", "LabelingMetadata", "LabelingStat"]
