from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict


class TimeSeriesRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data_type: str = Field(alias="dataType")
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None
    hour: int
    value: float
    id: Optional[int] = None


class PredictRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str
    from_date: str = Field(alias="fromDate")
    from_time: str = Field(alias="fromTime")
    to_date: str = Field(alias="toDate")
    to_time: str = Field(alias="toTime")


class PollRequest(BaseModel):
    username: str
    token: Optional[str] = None


class HourDataEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_time: str = Field(alias="dateTime")
    yhat: float


class HourDataPush(BaseModel):
    username: str
    token: Optional[str] = None
    data: List[HourDataEntry] = []


class PredictData(BaseModel):
    act: Dict[str, float] = {}
    avg: Dict[str, float] = {}


class SeriesPoint(BaseModel):
    date: str
    yhat: float


class PollResponse(BaseModel):
    data: List[SeriesPoint]
    end: bool
