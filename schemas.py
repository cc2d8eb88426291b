"""
Database Schemas for the Tier List API

Each app instance stores its collections as JSON blobs keyed by
"{resource}:{appId}" (tiers, categories, listings, suggestions, reports,
moderators, misc, app:meta). Field names are camelCase on the wire.
Accounts live in the "user" collection.
"""

from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Optional, Literal, List, Dict

SuggestionStatus = Literal['pending', 'approved', 'rejected']
ReportAction = Literal['remove', 'edit', 'ignore']
ModeratorSource = Literal['installer', 'subreddit', 'app', 'system']


class Document(BaseModel):
    model_config = ConfigDict(extra='allow')

    def dump(self) -> dict:
        return self.model_dump(exclude_none=True)


class Karma(BaseModel):
    post: int = 0
    comment: int = 0


class User(BaseModel):
    username: str = Field(..., description="Unique handle")
    email: Optional[EmailStr] = Field(None, description="Contact address")
    password_hash: str = Field(..., description="Hashed password")
    avatarUrl: str = Field('', description="Profile picture")
    karma: Karma = Field(default_factory=Karma)
    is_active: bool = Field(True, description="Whether user is active")


class Tier(Document):
    id: str
    name: str
    colour: str
    order: int = Field(0, description="Display position, dense from 0")


class Category(Document):
    id: str
    name: str
    createdAt: str


class Listing(Document):
    id: str
    appId: str
    name: str = ''
    imageUrl: str
    categoryId: str = '__others__'
    category: Optional[str] = Field(None, description="Display category, e.g. 'Others - Sequels'")
    url: Optional[str] = None
    createdAt: str
    updatedAt: str
    votes: Dict[str, int] = Field(default_factory=dict, description="Tier name -> vote count")
    totalVotes: int = 0
    userVotes: Dict[str, str] = Field(default_factory=dict, description="User id -> tier name")


class Suggestion(Document):
    id: str
    appId: str
    name: str = ''
    imageUrl: str
    url: Optional[str] = None
    notes: Optional[str] = None
    customCategory: Optional[str] = None
    categoryId: str = '__others__'
    status: SuggestionStatus = 'pending'
    autoApproved: bool = False
    createdAt: str
    updatedAt: str


class Report(Document):
    id: str
    appId: str
    reporterId: str
    reporterName: Optional[str] = None
    listingId: str
    listingName: Optional[str] = None
    listingImageUrl: Optional[str] = None
    category: Optional[str] = None
    issue: str
    comment: Optional[str] = None
    status: Literal['action-needed'] = 'action-needed'
    actionTaken: Optional[ReportAction] = None
    createdAt: str
    resolvedAt: Optional[str] = None
    listingUrl: Optional[str] = None


class Moderator(Document):
    id: str
    username: str
    avatarUrl: str = ''
    modSince: str
    permissions: List[str] = Field(default_factory=list)
    source: Optional[ModeratorSource] = None


class AppMeta(Document):
    appId: str
    subreddit: str = ''
    installerId: str
    installerUsername: str
    createdAt: str
    postUrl: Optional[str] = None
    subredditId: Optional[str] = None


class FeaturedItem(BaseModel):
    id: str
    name: str
    imageUrl: Optional[str] = None
    categoryId: Optional[str] = None
    category: Optional[str] = None
    url: Optional[str] = None


class MiscSettings(Document):
    title: Optional[str] = None
    callToAction: str = ''
    shortDescription: str = ''
    expiryDate: Optional[str] = None
    appIconUri: str = ''
    backgroundColor: str = '#0E1113'
    autoApproveSuggestions: bool = False
    featuredItemId: Optional[str] = None
    featuredItem: Optional[FeaturedItem] = None
    subredditId: Optional[str] = None
    createdAt: Optional[int] = None
