from typing import Optional

from pydantic import BaseModel

# Employees live in Firestore and are owned elsewhere; the engine only ever
# reads them through these two shapes.


# Public fields observers are allowed to see
class EmployeeSummary(BaseModel):
    id: str
    name: str = ""
    department: Optional[str] = None


# Resolved once per request / socket handshake in core.deps
class EmployeePrincipal(BaseModel):
    uid: str
    name: str = ""
    email: str = ""
    department: Optional[str] = None
    role: str = ""
    is_observer: bool = False

    def summary(self) -> EmployeeSummary:
        return EmployeeSummary(id=self.uid, name=self.name, department=self.department)
