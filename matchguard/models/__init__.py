# Models package
from .base import Base
from .option import Option, UserField
