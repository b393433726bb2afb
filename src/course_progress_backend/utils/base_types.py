import typing

UserId = typing.NewType("UserId", str)
CourseId = typing.NewType("CourseId", str)

SectionId = typing.NewType("SectionId", str)
ChapterId = typing.NewType("ChapterId", str)
IsoTimestamp = typing.NewType("IsoTimestamp", str)
